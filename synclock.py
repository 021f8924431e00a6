"""Lock directory preventing concurrent backups of the same configuration.

The lock is a directory, created with a single mkdir call, holding a
"pid" file with the process ID of its owner. A lock whose owner is no
longer running is stale and gets cleared.
"""

import os
import shutil

from syncerrors import SyncError
from synclog import printlog

PID_FILE = "pid"


def pid_alive(pid):
    """Check whether a process is running.

    Args:
        pid: process ID

    Returns:
        Boolean
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:  # Running, but owned by another user
        return True
    return True


class Lock:
    """Directory lock owned by a process."""

    def __init__(self, path, pid=None):
        """Create a Lock object. Nothing happens on disk until acquire.

        Args:
            path: path of the lock directory
            pid: process ID to record; defaults to the current process
        """
        self.path = path
        self.pid = os.getpid() if pid is None else pid
        self.locked = False

    @property
    def pid_file(self):
        return os.path.join(self.path, PID_FILE)

    def owner(self):
        """Read the process ID recorded in the lock directory.

        Raises:
            SyncError: code 12 if the pid file is missing or unreadable
        """
        try:
            with open(self.pid_file) as file:
                return int(file.readline())
        except (OSError, ValueError) as error:
            printlog("lockdir exists with unknown PID", level="error")
            raise SyncError(12) from error

    def claim_stale(self, owner):
        """Take over a stale lock left by a dead process.

        The pid file is renamed, so that only one of several processes
        finding the same stale lock can clear it.

        Args:
            owner: process ID read from the stale lock

        Raises:
            SyncError: code 11 if another process cleared or took the
                lock in the meantime
        """
        claimed = f"{self.pid_file}.{self.pid}"
        try:
            os.rename(self.pid_file, claimed)
        except FileNotFoundError as error:
            printlog("Lock cleared by another process. Exiting.",
                     level="error")
            raise SyncError(11) from error
        try:
            with open(claimed) as file:
                current = int(file.readline())
        except (OSError, ValueError):
            current = None
        if current != owner:
            os.rename(claimed, self.pid_file)
            printlog(f"Lock taken by PID {current} in the meantime. "
                     "Exiting.", level="error")
            raise SyncError(11)
        self.release(force=True)

    def acquire(self):
        """Create the lock directory, clearing a stale one first.

        Raises:
            SyncError: code 11 if a running process holds the lock, 12 if
                the holder cannot be determined, 4 if the directory cannot
                be created
        """
        printlog(f"Acquire lock ({self.path}), pid={self.pid}")
        if os.path.isdir(self.path):
            owner = self.owner()
            if pid_alive(owner):
                printlog(f"PID {owner} (in {self.pid_file}) still active. "
                         "Exiting.", level="error")
                raise SyncError(11)
            printlog(f"Stale lock file found (pid={owner}), forcing "
                     "unlock... ", level="warning")
            self.claim_stale(owner)
            printlog(f"Re-Acquire lock ({self.path}), pid={self.pid}")
        try:
            os.mkdir(self.path)
        except OSError as error:
            printlog("Cannot create lock file. Exiting.", level="error")
            raise SyncError(4) from error
        try:
            with open(self.pid_file, "w") as file:
                file.write(f"{self.pid}\n")
        except OSError as error:
            shutil.rmtree(self.path)
            printlog("Cannot write lock PID file. Exiting.", level="error")
            raise SyncError(4) from error
        self.locked = True

    def release(self, force=False):
        """Remove the lock directory if this object created it.

        Args:
            force: remove the directory regardless of its owner
        """
        if not (force or self.locked):
            printlog(f"Nothing to unlock ({self.path})", level="debug")
            return
        if force:
            printlog(f"Forced lock release ({self.path})")
        else:
            printlog(f"Release lock ({self.path})")
        if os.path.isdir(self.path):
            shutil.rmtree(self.path)
            printlog("Removed:\t" + self.path, level="file operation")
        self.locked = False

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.release()
