"""Exit codes and exceptions of sync.py."""

# Exit codes of a backup run, with the text shown in reports
ERROR_STR = {0: "ok",
             1: "error",
             2: "missing command",
             3: "source directory error",
             4: "could not create lock file",
             5: "could not rotate backup directories",
             6: "partial backup detected",
             7: "rsync error",
             8: "invalid command line",
             9: "missing configuration file",
             10: "missing destination directory",
             11: "cannot acquire lock",
             12: "cannot determine PID of locked directory",
             13: "error in rotation",
             14: "could not set modification time on target",
             15: "error on non-daily tree copy"}


class SyncError(Exception):
    """Fatal error aborting a backup run.

    Args:
        code: exit code, a key of ERROR_STR
        message: optional detail; defaults to the ERROR_STR text
    """

    def __init__(self, code, message=None):
        self.code = code
        super().__init__(message or ERROR_STR.get(code, ERROR_STR[1]))


class Interrupted(Exception):
    """Raised from signal handlers to unwind a run."""
