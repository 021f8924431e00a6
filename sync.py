#!/usr/bin/env python3

"""sync - a backup utility using ssh/rsync facilities.

SYNOPSIS
    sync-backup [-a PERIOD]... [-DflmnruvzZ] CONFIG

DESCRIPTION
    Perform a backup to a local or remote destination, keeping different
    versions (daily, weekly, monthly, yearly). All options can be set in
    CONFIG file, which is mandatory.
    The synchronization is made with rsync(1), and only files changed or
    modified are actually copied; files which are identical with the
    previous backup are hard-linked to it.

    Each version lives in a generation directory of the destination:
    daily-00, daily-01, ..., weekly-00, ... The -00 directory receives
    the new backup, which is then rotated to -01 while the oldest
    generation is deleted.

OPTIONS
    -a PERIOD
        Indicate which backup(s) should be done. PERIOD is a string made
        of one or more of 'y', 'm', 'w' and 'd', for yearly, monthly,
        weekly and daily backups. Multiple -a may appear: "-a ymd",
        "-adm -ay" and "-a m -a y -a d" are equivalent.
        Without this option, and if none of YEARLY, MONTHLY, WEEKLY and
        DAILY is set in CONFIG, the backups depend on the date: daily
        backup every day, weekly every Sunday, monthly every first day of
        month, and yearly every Jan 1st.
    -D  Do not collect output for the final report; display it as it
        comes. Useful when errors are difficult to track.
    -f  Filter some rsync output, such as hard and soft links and dirs.
    -l  Keep log file (usually /tmp/sync-XXXXXXXX.log).
    -m  Display this description and exit.
    -n  Do not send mail report (which is the default if MAILTO is set
        in the environment).
    -r  Resume an interrupted transfer (rsync --partial option).
    -u  Use numeric IDs (UID and GID) instead of user and group names.
    -v  Add debug messages.
    -z  Enable rsync compression. Should be used when the transport is
        more expensive than CPU (typically slow connections).
    -Z  Do not compress the log attachment of mail reports.

CONFIGURATION FILE
    A Python file; see config.py for an example. Settings in the file
    have the last word over command-line options. SOURCEDIR, SERVER
    (user@host, or "local") and DESTDIR are mandatory. The file may
    define beforesync(config) and aftersync(config) functions, run just
    before and after the daily rsync.

PREREQUISITES
    rsync, and ssh for remote destinations, must be in PATH. Password-less
    ssh access to the destination is needed. Mail reports require a
    working sendmail command.
"""

import argparse
import datetime as dt
import os
import platform
import posixpath
import runpy
import shlex
import shutil
import signal
import socket
import subprocess
import sys
import tempfile
import time
from contextlib import contextmanager

import colorama  # pip install colorama

import syncreport
from syncerrors import Interrupted, SyncError
from synclock import Lock
from synclog import printlog, set_verbose

CMDNAME = "sync"

# Backup periods, in the order they must be processed: non-daily
# generations are copied from the newest daily one
PERIODS = ("daily", "weekly", "monthly", "yearly")
PERIOD_LETTERS = {"d": "daily", "w": "weekly", "m": "monthly", "y": "yearly"}
KEEP_SETTINGS = {"daily": "NDAYS", "weekly": "NWEEKS",
                 "monthly": "NMONTHS", "yearly": "NYEARS"}
FORCE_SETTINGS = {"daily": "DAILY", "weekly": "WEEKLY",
                  "monthly": "MONTHLY", "yearly": "YEARLY"}

# rsync exit code for "some files vanished before they could be
# transferred", which happens on live file systems
RSYNC_VANISHED = 24

DEFAULTS = {"SOURCEDIR": "",
            "SERVER": "",
            "DESTDIR": "",
            "NYEARS": 3,
            "NMONTHS": 12,
            "NWEEKS": 6,
            "NDAYS": 10,
            "RSYNCOPTS": (),
            "MODIFYWINDOW": 1,
            "YEARLY": False,
            "MONTHLY": False,
            "WEEKLY": False,
            "DAILY": False,
            "FILTERLNK": False,
            "RESUME": False,
            "COMPRESS": False,
            "NUMID": False,
            "DEBUG": False,
            "VERBOSE": False,
            "KEEPLOGFILE": False,
            "ZIPMAIL": True,
            "MAILTO": "",
            "LOCKDIR": None,
            "BACKUPDIR": ""}
MANDATORY = ("SOURCEDIR", "SERVER", "DESTDIR")

# Exceptions of destination file operations
TARGET_ERRORS = (OSError, subprocess.SubprocessError)


def default_beforesync(config):
    printlog("calling default beforesync...")


def default_aftersync(config):
    printlog("calling default aftersync...")


class Config:
    """Settings of a backup run.

    Attributes are the upper-case names of DEFAULTS, plus the path of the
    configuration file and the beforesync and aftersync hooks.
    """

    def __init__(self, path, settings, beforesync=None, aftersync=None):
        self.path = path
        for name, value in settings.items():
            setattr(self, name, value)
        self.beforesync = beforesync or default_beforesync
        self.aftersync = aftersync or default_aftersync

    @property
    def local(self):
        """Whether the destination is on this machine."""
        return self.SERVER == "local"

    @property
    def destination(self):
        """Destination directory as rsync sees it."""
        if self.local:
            return self.DESTDIR
        return f"{self.SERVER}:{self.DESTDIR}"


def load_config(path, overrides=None):
    """Read a configuration file.

    Args:
        path: path of the Python configuration file
        overrides: dict of settings from the command line. Settings in
            the file take precedence.

    Returns:
        Config instance

    Raises:
        SyncError: code 9 if the file cannot be read, 8 if it is invalid
    """
    if not (os.path.isfile(path) and os.access(path, os.R_OK)):
        raise SyncError(9, f"Cannot open {path} file")
    try:
        namespace = runpy.run_path(path)
    except Exception as error:
        raise SyncError(8, f"Config error in {path}: {error!r}") from error

    settings = dict(DEFAULTS, MAILTO=os.environ.get("MAILTO", ""))
    settings.update(overrides or {})
    settings.update({name: value for name, value in namespace.items()
                     if name in DEFAULTS})
    hooks = {name: namespace[name] for name in ("beforesync", "aftersync")
             if callable(namespace.get(name))}
    config = Config(os.path.abspath(path), settings, **hooks)
    process_config(config)
    return config


def process_config(config):
    """Check and transform configuration.

    Raises:
        SyncError: code 8 on missing or invalid settings
    """
    for name in MANDATORY:
        if not getattr(config, name):
            raise SyncError(8, "Missing configuration: " + name)
    for name in KEEP_SETTINGS.values():
        value = getattr(config, name)
        if isinstance(value, bool) or not isinstance(value, int) \
                or value < 0:
            raise SyncError(8, f"Config error: {name} must be a "
                               f"non-negative integer, not {value!r}")
    if isinstance(config.RSYNCOPTS, str):
        raise SyncError(8, "Config error: RSYNCOPTS must be a list")
    config.RSYNCOPTS = list(config.RSYNCOPTS)
    if config.LOCKDIR is None:
        config.LOCKDIR = os.path.join(
            tempfile.gettempdir(),
            f"{CMDNAME}-{socket.gethostname()}-"
            f"{os.path.basename(config.path)}.lock")


def plan_periods(config, today=None):
    """Decide which backups to do.

    Without any forced period, the date decides: daily backup every day,
    weekly on Sunday, monthly on the first day of the month and yearly on
    Jan 1st. Periods with nothing to keep are dropped.

    Args:
        config: Config instance
        today: dt.date object; None for the current date

    Returns:
        List of (period, number of generations to keep) tuples, in
            PERIODS order
    """
    if today is None:
        today = dt.date.today()
    todo = {period: getattr(config, FORCE_SETTINGS[period])
            for period in PERIODS}
    if not any(todo.values()):
        todo = {"daily": True,
                "weekly": today.isoweekday() == 7,
                "monthly": today.day == 1,
                "yearly": today.day == 1 and today.month == 1}
    return [(period, getattr(config, KEEP_SETTINGS[period]))
            for period in PERIODS
            if todo[period] and getattr(config, KEEP_SETTINGS[period]) > 0]


def generation_path(directory, period, index):
    """Build the path of a generation directory, e.g. /dest/daily-03."""
    return posixpath.join(directory, f"{period}-{index:02d}")


def run_command(command, check=True):
    """Run a command, logging everything it writes.

    Args:
        command: list of program and arguments
        check: boolean; raise on a non-zero exit code

    Returns:
        subprocess.CompletedProcess object

    Raises:
        subprocess.CalledProcessError: the command failed and check is set
    """
    result = subprocess.run(command, stdout=subprocess.PIPE,
                            stderr=subprocess.STDOUT, text=True,
                            errors="replace")
    for line in result.stdout.splitlines():
        printlog(line)
    if check and result.returncode != 0:
        raise subprocess.CalledProcessError(result.returncode, command,
                                            output=result.stdout)
    return result


class LocalTarget:
    """File operations on a destination on this machine."""

    def exists(self, path):
        return os.path.lexists(path)

    def remove(self, path):
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        elif os.path.lexists(path):
            os.remove(path)

    def move(self, source, target):
        os.rename(source, target)

    def touch(self, path):
        os.utime(path)

    def copy_hard(self, reference, target):
        """Copy a tree, hard-linking all files to the reference tree."""
        run_command(["rsync", "-ar", f"--link-dest={reference}",
                     reference + "/", target])


class RemoteTarget:
    """File operations on a destination reached through ssh."""

    def __init__(self, server):
        self.server = server

    def _ssh(self, *args, check=True):
        return run_command(["ssh", self.server, shlex.join(args)],
                           check=check)

    def exists(self, path):
        return self._ssh("test", "-e", path, check=False).returncode == 0

    def remove(self, path):
        self._ssh("rm", "-rf", path)

    def move(self, source, target):
        self._ssh("mv", source, target)

    def touch(self, path):
        self._ssh("touch", path)

    def copy_hard(self, reference, target):
        self._ssh("rsync", "-ar", f"--link-dest={reference}",
                  reference + "/", target)


def make_target(config):
    if config.local:
        return LocalTarget()
    return RemoteTarget(config.SERVER)


def rotate(target, directory, period, keep):
    """Shift the generation directories of a period.

    Delete <period>-<keep>, then move <period>-<keep - 1> to
    <period>-<keep>, and so on down to <period>-00.

    Args:
        target: LocalTarget or RemoteTarget instance
        directory: destination directory
        period: one of PERIODS
        keep: number of generations to keep

    Raises:
        SyncError: code 5 if the oldest generation cannot be deleted, 13
            if a generation cannot be moved
    """
    paths = [generation_path(directory, period, index)
             for index in range(keep, -1, -1)]
    printlog(f"deleting {posixpath.basename(paths[0])}...", prefix="short",
             timestamp=True)
    try:
        target.remove(paths[0])
    except TARGET_ERRORS as error:
        # Seen on corrupted file systems: better stop than go on with
        # strange side effects
        if target.exists(paths[0]):
            printlog(f"Could not remove {paths[0]}. This SHOULD NOT happen.",
                     level="error", prefix="short")
            raise SyncError(5) from error

    printlog(f"rotating {period}", prefix="short", timestamp=True)
    for newer, older in zip(paths[1:], paths):
        if not target.exists(newer):
            continue
        try:
            target.move(newer, older)
        except TARGET_ERRORS as error:
            printlog(f"Could not move {newer} to {older}", level="error",
                     prefix="short")
            raise SyncError(13) from error
        printlog(f"Moved:\t{posixpath.basename(newer)} -> "
                 f"{posixpath.basename(older)}", level="file operation")


def rsync_command(config):
    """Build the rsync command line of a daily backup."""
    command = ["rsync", "-aHixv", *config.RSYNCOPTS]
    if config.COMPRESS:
        command.append("--compress")
    if config.NUMID:
        command.append("--numeric-ids")
    command += ["--delete",
                "--delete-during",
                "--delete-excluded",
                f"--modify-window={config.MODIFYWINDOW}",
                "--partial",
                "--link-dest=" + generation_path(config.DESTDIR, "daily", 1),
                ".",
                generation_path(config.destination, "daily", 0)]
    return command


def run_rsync(command, cwd):
    """Run rsync, logging its output line by line.

    Returns:
        rsync exit code
    """
    printlog(shlex.join(command))
    with subprocess.Popen(command, cwd=cwd, stdout=subprocess.PIPE,
                          stderr=subprocess.STDOUT, text=True,
                          errors="replace") as process:
        for line in process.stdout:
            printlog(line.rstrip("\n"))
    return process.returncode


def transfer(config, target):
    """Back up the source directory into daily-00.

    Files unchanged since daily-01 are hard-linked to it by rsync.

    Raises:
        SyncError: code 7 on rsync failure, 14 if daily-00 cannot be
            touched
    """
    destination = generation_path(config.DESTDIR, "daily", 0)
    config.beforesync(config)
    printlog("rsync copy...", prefix="short", timestamp=True)
    status = run_rsync(rsync_command(config), cwd=config.SOURCEDIR)
    if status not in (0, RSYNC_VANISHED):
        printlog(f"rsync error {status}", level="error", prefix="short")
        raise SyncError(7)
    if status == RSYNC_VANISHED:
        printlog("Some source files vanished during transfer",
                 level="warning", prefix="short")
    try:
        target.touch(destination)
    except TARGET_ERRORS as error:
        printlog(f"cannot change {destination} modification time",
                 level="error", prefix="short")
        raise SyncError(14) from error
    config.aftersync(config)


def copy_generation(config, target, period):
    """Fill <period>-00 from daily-01 using hard links.

    Raises:
        SyncError: code 15 on copy failure
    """
    reference = generation_path(config.DESTDIR, "daily", 1)
    destination = generation_path(config.DESTDIR, period, 0)
    if not target.exists(reference):
        printlog(f"No {reference} directory. Skipping {period} backup.",
                 level="warning")
        return
    printlog(f"{destination} update...", prefix="short", timestamp=True)
    try:
        target.copy_hard(reference, destination)
    except TARGET_ERRORS as error:
        printlog(f"copyhard error: {error}", level="error", prefix="short")
        raise SyncError(15) from error


def backup_period(config, target, period, keep):
    """Do the backup of one period, then rotate its generations.

    Raises:
        SyncError: code 6 if <period>-00 exists without resume option,
            or any code of transfer, copy_generation and rotate
    """
    printlog(f"{period} backup...", prefix="long", timestamp=True)
    destination = generation_path(config.DESTDIR, period, 0)
    if target.exists(destination):
        if not config.RESUME:
            printlog(f'{destination} already exists, and no "resume" '
                     "option.", level="error", prefix="short")
            raise SyncError(6)
        printlog(f"Warning: Resuming {period} partial backup.",
                 level="warning", prefix="short")
    if period == "daily":
        transfer(config, target)
    else:
        copy_generation(config, target, period)
    rotate(target, config.DESTDIR, period, keep)


def check_commands(config):
    """Check that needed external programs are available.

    A missing sendmail only disables the mail report.

    Raises:
        SyncError: code 2 if rsync, or ssh for a remote destination, is
            missing
    """
    required = ["rsync"] if config.local else ["rsync", "ssh"]
    missing = []
    results = []
    for command in required + ["sendmail"]:
        if shutil.which(command) is not None:
            results.append(f"{command}...ok")
            continue
        results.append(f"{command}...NOK")
        if command == "sendmail":
            config.MAILTO = ""
        else:
            missing.append(command)
    printlog("Checking for commands : " + " ".join(results))
    if missing:
        printlog("Please install the following programs: "
                 f"{' '.join(missing)}.", prefix="short")
        raise SyncError(2)


def log_settings(config, periods):
    printlog(f"Starting {CMDNAME}", prefix="long", timestamp=True)
    printlog(f"Python version: {platform.python_version()}")
    printlog(f"Hostname: {socket.gethostname()}")
    printlog(f"Operating System: {platform.system()} {platform.release()} "
             f"on {platform.machine()}")
    printlog(f"Config : {config.path}")
    printlog(f"Src dir: {config.SOURCEDIR}")
    printlog(f"Dst dir: {config.SERVER}:{config.DESTDIR}")
    printlog("Actions: " + " ".join(f"{period} {keep}"
                                    for period, keep in periods))
    if config.RSYNCOPTS:
        printlog(f"Rsync additional options ({len(config.RSYNCOPTS)}): "
                 + " ".join(f'"{option}"' for option in config.RSYNCOPTS))
    else:
        printlog("Rsync additional options : None.")
    printlog(f"Mail recipient: {config.MAILTO or '<unset>'}")
    printlog(f"Compression: {'gzip' if config.ZIPMAIL else 'none'}")


def run(config, lock, today=None):
    """Perform all backups planned for today.

    Args:
        config: Config instance
        lock: Lock instance, acquired here and released by the caller
        today: dt.date object; None for the current date

    Raises:
        SyncError: on any failure
    """
    periods = plan_periods(config, today)
    log_settings(config, periods)
    check_commands(config)

    # Everything after the mark goes to the mail attachment
    printlog("Mark", prefix="short")
    printlog("Starting backup", prefix="long", timestamp=True)
    lock.acquire()

    target = make_target(config)
    if not os.path.isdir(config.SOURCEDIR):
        printlog(f"Invalid source directory ({config.SOURCEDIR}).",
                 level="error", prefix="short")
        raise SyncError(3)
    if not target.exists(config.DESTDIR):
        printlog(f"destination directory ({config.DESTDIR}) missing.",
                 level="error", prefix="short")
        raise SyncError(10)

    for period, keep in periods:
        backup_period(config, target, period, keep)


def _raise_interrupted(signum, frame):
    raise Interrupted(signal.Signals(signum).name)


@contextmanager
def signals_interrupt():
    """Turn SIGHUP and SIGTERM into Interrupted exceptions."""
    previous = {signum: signal.signal(signum, _raise_interrupted)
                for signum in (signal.SIGHUP, signal.SIGTERM)}
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


class _ArgumentParser(argparse.ArgumentParser):
    """Argument parser exiting with code 8 on usage errors."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(8, f"{self.prog}: error: {message}\n")


def parse_arguments(argv=None):
    """Parse command-line arguments.

    Returns:
        Namespace populated with arguments
    """
    argparser = _ArgumentParser(
        prog=CMDNAME,
        description="Backup to a local or remote destination, keeping "
                    "daily, weekly, monthly and yearly versions.")
    argparser.add_argument("-a", dest="periods", action="append",
                           default=[], metavar="PERIOD",
                           help="Backups to do: one or more of 'y', 'm', "
                                "'w' and 'd'")
    argparser.add_argument("-D", dest="debug", action="store_true",
                           help="Display output as it comes instead of "
                                "reporting at exit")
    argparser.add_argument("-f", dest="filter_links", action="store_true",
                           help="Filter rsync output about links and dirs")
    argparser.add_argument("-l", dest="keep_log", action="store_true",
                           help="Keep log file")
    argparser.add_argument("-m", dest="man", action="store_true",
                           help="Display a man-like description and exit")
    argparser.add_argument("-n", dest="no_mail", action="store_true",
                           help="Do not send mail report")
    argparser.add_argument("-r", dest="resume", action="store_true",
                           help="Resume an interrupted transfer")
    argparser.add_argument("-u", dest="numeric_ids", action="store_true",
                           help="Use numeric user and group IDs")
    argparser.add_argument("-v", dest="verbose", action="store_true",
                           help="Add debug messages")
    argparser.add_argument("-z", dest="compress", action="store_true",
                           help="Enable rsync compression")
    argparser.add_argument("-Z", dest="no_zip", action="store_true",
                           help="Do not compress mail attachment")
    argparser.add_argument("config", nargs="?", help="Configuration file")
    args = argparser.parse_args(argv)
    if args.man:
        return args
    if args.config is None:
        argparser.error("the following arguments are required: config")
    for letter in "".join(args.periods):
        if letter not in PERIOD_LETTERS:
            argparser.error(f'unknown period "{letter}"')
    return args


def command_line_settings(args):
    """Translate command-line arguments to configuration settings."""
    settings = {FORCE_SETTINGS[PERIOD_LETTERS[letter]]: True
                for letter in "".join(args.periods)}
    flags = {"debug": "DEBUG", "filter_links": "FILTERLNK",
             "keep_log": "KEEPLOGFILE", "resume": "RESUME",
             "numeric_ids": "NUMID", "verbose": "VERBOSE",
             "compress": "COMPRESS"}
    settings.update({name: True for option, name in flags.items()
                     if getattr(args, option)})
    if args.no_mail:
        settings["MAILTO"] = ""
    if args.no_zip:
        settings["ZIPMAIL"] = False
    return settings


def report(config, status, seconds, capture):
    """Display or mail the report of a finished run."""
    lines = []
    kept_log = None
    if capture is not None:
        lines = capture.stop()
        if config.KEEPLOGFILE:
            kept_log = capture.path
        else:
            capture.remove()
    if config.FILTERLNK:
        lines = syncreport.filter_lines(lines)
    lines = syncreport.summary(CMDNAME, status, seconds, kept_log) + lines
    subject = syncreport.make_subject(CMDNAME, config.SOURCEDIR,
                                      socket.gethostname(), status)
    try:
        syncreport.deliver(lines, config.MAILTO, subject,
                           compress=config.ZIPMAIL)
    except TARGET_ERRORS as error:
        print(f"{CMDNAME}: cannot send mail report: {error}",
              file=sys.stderr)
        for line in lines:
            if line != syncreport.MARK:
                print(line)


def main(argv=None):
    """Run a backup from the command line.

    Returns:
        Exit code, a key of ERROR_STR
    """
    args = parse_arguments(argv)
    if args.man:
        print(__doc__)
        return 0
    try:
        config = load_config(args.config, command_line_settings(args))
    except SyncError as error:
        print(f"{CMDNAME}: {error}. Exiting.", file=sys.stderr)
        return error.code

    colorama.just_fix_windows_console()
    set_verbose(config.VERBOSE)
    capture = None if config.DEBUG else syncreport.LogCapture()
    started = time.time()
    lock = Lock(config.LOCKDIR)
    status = 0
    with signals_interrupt():
        try:
            run(config, lock)
        except SyncError as error:
            printlog(f"FATAL: {error}, exit code {error.code}. Aborting.",
                     level="error")
            status = error.code
        except (Interrupted, KeyboardInterrupt) as error:
            signame = str(error) or "SIGINT"
            printlog(f"FATAL: interrupted ({signame}). Aborting.",
                     level="error")
            status = 1
        except Exception as error:
            printlog(f"FATAL: {error!r}. Aborting.", level="error")
            status = 1
        finally:
            # Another backup may start from now
            lock.release()
            printlog("Ending backup.", prefix="long", timestamp=True)
            report(config, status, time.time() - started, capture)
    return status


if __name__ == "__main__":
    sys.exit(main())
