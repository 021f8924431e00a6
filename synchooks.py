"""Helpers for beforesync and aftersync hooks of sync.py configurations.

dump_mysql_databases is meant for a beforesync hook on a database
server: it dumps every database next to the raw data files, and writes
an rsync per-directory filter file excluding those raw files, so that
only the dumps are backed up.
"""

import gzip
import os
import shutil
import subprocess
import tempfile

from syncerrors import SyncError
from synclog import printlog

FILTERNAME = ".rsync-filter-system"

# Databases that cannot or need not be dumped
SKIPPED_DATABASES = {"information_schema", "performance_schema"}


def rsync_filter(filtername=FILTERNAME):
    """Build the rsync option reading per-directory filter files.

    Args:
        filtername: name of the filter files

    Returns:
        Option string to add to RSYNCOPTS
    """
    return f"--filter=dir-merge {filtername}"


def mysql_query(query, user="root"):
    """Run a query with the mysql client, without headers.

    Returns:
        List of output lines
    """
    command = ["mysql", "-sN", "-u", user, "-e", query]
    result = subprocess.run(command, stdout=subprocess.PIPE,
                            stderr=subprocess.PIPE, text=True,
                            errors="replace")
    for line in result.stderr.splitlines():
        printlog(line, level="error")
    if result.returncode != 0:
        raise subprocess.CalledProcessError(result.returncode, command,
                                            output=result.stdout,
                                            stderr=result.stderr)
    return result.stdout.splitlines()


def dump_database(database, path, user="root"):
    """Write a gzip-compressed mysqldump of a database.

    Raises:
        SyncError: code 1 if mysqldump fails
    """
    command = ["mysqldump", f"--user={user}", "--single-transaction",
               "--routines", database]
    with tempfile.TemporaryFile("w+", errors="replace") as errors:
        with subprocess.Popen(command, stdout=subprocess.PIPE,
                              stderr=errors) as process:
            with gzip.open(path, "wb") as dump:
                shutil.copyfileobj(process.stdout, dump)
        errors.seek(0)
        for line in errors.read().splitlines():
            printlog(line, level="error")
    if process.returncode != 0:
        printlog("mysqldump error", level="error", prefix="short")
        raise SyncError(1, f"mysqldump of {database} failed")


def dump_mysql_databases(filtername=FILTERNAME, user="root"):
    """Dump all databases into the database data directory.

    Args:
        filtername: name of the rsync filter file written in the data
            directory, excluding the raw database directories
        user: database user

    Returns:
        List of dump file paths

    Raises:
        SyncError: code 1 if the databases cannot be listed or dumped
    """
    printlog("calling user beforesync: mysql databases dumps...",
             prefix="short", timestamp=True)
    try:
        datadir = mysql_query("select @@datadir", user)[0].strip()
        databases = mysql_query("SHOW DATABASES;", user)
    except (OSError, IndexError, subprocess.CalledProcessError) as error:
        printlog("cannot get databases directory or list", level="error",
                 prefix="short")
        raise SyncError(1) from error

    dumps = []
    with open(os.path.join(datadir, filtername), "w") as filterfile:
        for database in databases:
            # Do not back up database contents themselves
            filterfile.write(f"- /{database}/*\n")
            if database in SKIPPED_DATABASES:
                printlog(f"{database}... skipped.")
                continue
            path = os.path.join(datadir, database + ".sql.gz")
            printlog(f"{database}... dumping to {path}")
            dump_database(database, path, user)
            dumps.append(path)
    return dumps
