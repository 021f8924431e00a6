#!/usr/bin/env python3

"""Sample configuration file for sync.py.

Usage: sync-backup -r -f -u /path/to/config.py

Values below the commented-out lines are examples; the commented-out
lines show the defaults. Only SOURCEDIR, SERVER and DESTDIR are
mandatory.
"""

import synchooks

# Source directory full path, destination server and path. SERVER can be
# "user@host", or "local" if the destination is on this machine.
# SOURCEDIR = ""
# SERVER = ""
# DESTDIR = ""
SOURCEDIR = "/example-srcdir"
SERVER = "root@backuphost"
DESTDIR = "/mnt/nas1/example-destdir"

# Number of versions to keep per period. 0 disables the period.
# NYEARS = 3
# NMONTHS = 12
# NWEEKS = 6
# NDAYS = 10

# Other rsync options, as a list
# RSYNCOPTS = []
FILTERNAME = ".rsync-filter-system"
RSYNCOPTS = [synchooks.rsync_filter(FILTERNAME)]

# Command-line options can be set here too, and have the last word.
# For example, always resume interrupted transfers:
# RESUME = True

# Mail report recipient. Defaults to the MAILTO environment variable.
# MAILTO = "admin@example.com"

# Local mount point of DESTDIR, used by sync-view
# BACKUPDIR = "/mnt/backup"

# Functions run immediately before and after the daily rsync. They get
# the run's configuration as argument. Can be used to create database
# dumps, etc. Raise syncerrors.SyncError to abort the backup.
#
# def beforesync(config):
#     synchooks.dump_mysql_databases(FILTERNAME)
#
# def aftersync(config):
#     from synclog import printlog
#     printlog("calling user aftersync", prefix="short", timestamp=True)
