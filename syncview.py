#!/usr/bin/env python3

"""List file versions from sync.py backups.

For each generation directory of a backup (daily-00, weekly-03, ...)
holding a copy of FILE, a symbolic link named after the generation is
created in a link directory, and a table of the versions is printed,
newest first.

Examples:
    List all .bashrc versions for the current user, from backups in
    /mnt/backup, excluding yearly and monthly-03 to monthly-09. The backup
    source is taken from the sync.py configuration file s.conf.py:

        sync-view -c s.conf.py -b /mnt/backup \\
            -x "^(yearly|monthly-0[3-9]).*$" ~/.bashrc

    Put links to .bashrc backups in /tmp/test, from /mnt/backup holding
    backups of /export:

        sync-view -r /export -b /mnt/backup -d /tmp/test ~/.bashrc
"""

import argparse
import datetime as dt
import os
import re
import stat
import sys
import tempfile
from collections import namedtuple

import colorama  # pip install colorama

import sync
from syncerrors import SyncError
from synclog import printlog, set_verbose

CMDNAME = "sync-view"

GENERATION_NAME = re.compile(r"^(daily|weekly|monthly|yearly)-\d\d$")
TABLE_HEADER = ("mod time", "backup", "inode", "size", "perms", "path")
DATE_FORMAT = "%Y-%m-%d %H:%M"

Version = namedtuple("Version", "backup path inode size mode mtime")


def get_generations(backupdir):
    """List generation directory names in a backup directory, sorted."""
    return sorted(name for name in os.listdir(backupdir)
                  if GENERATION_NAME.match(name)
                  and os.path.isdir(os.path.join(backupdir, name)))


def find_versions(target, rootdir, backupdir, exclude=None, unique=False):
    """Find the copies of a file in the generations of a backup.

    Args:
        target: absolute path of the backed up file or directory
        rootdir: source directory of the backup
        backupdir: local path of the backup destination directory
        exclude: regular expression; matching generation names are
            skipped
        unique: boolean; skip copies whose inode was already found.
            Identical copies are hard links to the same inode.

    Returns:
        List of Version instances, in generation name order
    """
    relative = os.path.relpath(target, rootdir)
    if relative == os.pardir or relative.startswith(os.pardir + os.sep):
        raise ValueError(f"{target} is not inside {rootdir}")
    versions = []
    inodes = set()
    for name in get_generations(backupdir):
        path = os.path.normpath(os.path.join(backupdir, name, relative))
        if not os.path.exists(path):
            printlog("Skipping non-existing " + path, level="debug")
            continue
        if exclude and re.search(exclude, name):
            printlog("Skipping " + name, level="debug")
            continue
        info = os.stat(path)
        if unique and info.st_ino in inodes:
            printlog(f"Skipping duplicate inode {info.st_ino} ({name})",
                     level="debug")
            continue
        printlog(f"Adding inode {info.st_ino} ({name})", level="debug")
        inodes.add(info.st_ino)
        versions.append(Version(backup=name, path=path, inode=info.st_ino,
                                size=info.st_size, mode=info.st_mode,
                                mtime=info.st_mtime))
    return versions


def prepare_link_dir(linkdir, target):
    """Create or empty the directory holding links to versions.

    Args:
        linkdir: path of the directory; None creates a temporary one
        target: the file looked for, used to name a temporary directory

    Returns:
        Path of the directory
    """
    if linkdir is None:
        linkdir = tempfile.mkdtemp(prefix=os.path.basename(target) + "-")
        printlog(f"{linkdir} target directory created.", level="debug")
        return linkdir
    if not os.path.exists(linkdir):
        printlog(f"Creating destination directory {linkdir}.",
                 level="debug")
        os.makedirs(linkdir)
    elif not os.path.isdir(linkdir):
        raise NotADirectoryError(linkdir)
    for name in os.listdir(linkdir):
        path = os.path.join(linkdir, name)
        if os.path.islink(path) or os.path.isfile(path):
            os.remove(path)
            printlog("Removed:\t" + path, level="debug")
    return linkdir


def make_links(versions, linkdir):
    """Create one symbolic link per version, named after its generation."""
    for version in versions:
        link = os.path.join(linkdir, version.backup)
        if os.path.lexists(link):
            os.remove(link)
        os.symlink(version.path, link)


def format_table(versions):
    """Format versions as aligned columns, newest first.

    Returns:
        List of lines
    """
    rows = sorted(((dt.datetime.fromtimestamp(version.mtime)
                    .strftime(DATE_FORMAT),
                    version.backup,
                    str(version.inode),
                    str(version.size),
                    stat.filemode(version.mode),
                    version.path)
                   for version in versions),
                  reverse=True)
    rows.insert(0, TABLE_HEADER)
    widths = [max(len(row[column]) for row in rows)
              for column in range(len(TABLE_HEADER))]
    return ["  ".join(cell.ljust(width)
                      for cell, width in zip(row, widths)).rstrip()
            for row in rows]


def parse_arguments(argv=None):
    """Parse command-line arguments.

    Returns:
        Namespace populated with arguments
    """
    argparser = argparse.ArgumentParser(
        prog=CMDNAME, description="List file versions from sync backups.")
    argparser.add_argument("-1", "--unique", action="store_true",
                           help="Skip duplicate files")
    argparser.add_argument("-b", "--backupdir",
                           help="Local mount point of the backups")
    argparser.add_argument("-c", "--config",
                           help="sync configuration file, providing root "
                                "and backup directories")
    argparser.add_argument("-d", "--destdir",
                           help="Directory to hold links to versions")
    argparser.add_argument("-m", "--man", action="store_true",
                           help="Display a man-like description and exit")
    argparser.add_argument("-r", "--root",
                           help="Source directory of the backups "
                                "(default: /)")
    argparser.add_argument("-v", "--verbose", action="store_true",
                           help="Print messages on what is being done")
    argparser.add_argument("-x", "--exclude", metavar="REGEX",
                           help="Skip generations matching REGEX")
    argparser.add_argument("file", nargs="?", help="File to look for")
    args = argparser.parse_args(argv)
    if not args.man and args.file is None:
        argparser.error("the following arguments are required: file")
    if args.exclude:
        try:
            re.compile(args.exclude)
        except re.error as error:
            argparser.error(f"invalid exclude pattern: {error}")
    return args


def main(argv=None):
    """List versions of a file from the command line.

    Returns:
        Exit code
    """
    args = parse_arguments(argv)
    if args.man:
        print(__doc__)
        return 0
    colorama.just_fix_windows_console()
    set_verbose(args.verbose)

    rootdir = os.sep
    backupdir = ""
    if args.config:
        try:
            config = sync.load_config(args.config)
        except SyncError as error:
            print(f"{CMDNAME}: {error}. Exiting.", file=sys.stderr)
            return error.code
        rootdir = config.SOURCEDIR
        backupdir = config.BACKUPDIR
    rootdir = os.path.realpath(args.root or rootdir)
    backupdir = args.backupdir or backupdir
    if not backupdir:
        print(f"{CMDNAME}: backup directory is not set.", file=sys.stderr)
        return 1
    target = os.path.realpath(args.file)

    printlog(f"ROOTDIR=[{rootdir}]", level="debug")
    printlog(f"BACKUPDIR=[{backupdir}]", level="debug")
    printlog(f"FILE=[{target}]", level="debug")
    for name, path in (("ROOTDIR", rootdir), ("BACKUPDIR", backupdir)):
        if not os.path.isdir(path):
            print(f"{CMDNAME}: {name} {path} is not a directory.",
                  file=sys.stderr)
            return 1

    try:
        linkdir = prepare_link_dir(args.destdir, target)
        versions = find_versions(target, rootdir, backupdir,
                                 exclude=args.exclude, unique=args.unique)
        make_links(versions, linkdir)
    except (OSError, ValueError) as error:
        print(f"{CMDNAME}: {error}", file=sys.stderr)
        return 1
    printlog(f"Links to versions are in {linkdir}", level="debug")

    for line in format_table(versions):
        print(line)
    return 0


if __name__ == "__main__":
    sys.exit(main())
