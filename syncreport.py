"""End-of-run report of sync.py: displayed on screen or mailed.

Everything logged during a run is collected in a temporary log file.
When the run ends, an exit status summary is put on top of the collected
lines. Lines up to the mark line become the mail body; the rest, usually
the detailed rsync output, is attached to the mail.
"""

import gzip
import logging
import os
import re
import subprocess
import tempfile
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import synclog
from syncerrors import ERROR_STR
from synclog import SHORT_PREFIX, logger

MARK = f"{SHORT_PREFIX} Mark"

# rsync itemized changes hidden in filter mode: hard links, directories,
# symbolic links
FILTERED_LINES = re.compile(r"^(hf|cd|cL)[ +]")

ATTACHMENT_NAME = "sync-log.txt"


class LogCapture:
    """Temporary log file receiving all output of a run."""

    def __init__(self, directory=None):
        """Create the log file and redirect output to it.

        Args:
            directory: where to create the file; None for the system
                temporary directory
        """
        descriptor, self.path = tempfile.mkstemp(prefix="sync-",
                                                 suffix=".log",
                                                 dir=directory)
        os.close(descriptor)
        self.handler = logging.FileHandler(self.path, encoding="utf-8")
        self.handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(self.handler)
        synclog.set_screen_output(False)

    def stop(self):
        """Restore screen output and return the collected lines."""
        logger.removeHandler(self.handler)
        self.handler.close()
        synclog.set_screen_output(True)
        with open(self.path, encoding="utf-8", errors="replace") as file:
            return file.read().splitlines()

    def remove(self):
        os.remove(self.path)


def summary(command, status, seconds, kept_log=None):
    """Build the lines put on top of a report.

    Args:
        command: program name
        status: exit code
        seconds: run duration
        kept_log: path of the kept log file, if any

    Returns:
        List of lines
    """
    seconds = int(seconds)
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    lines = [f"{command}: Exit code: {status} "
             f"({ERROR_STR.get(status, ERROR_STR[1])}) in {seconds} seconds "
             f"({hours}:{minutes:02d}:{secs:02d})"]
    if kept_log:
        lines.append(f"log file kept at: {kept_log}")
    lines.append("")
    return lines


def filter_lines(lines):
    """Drop rsync lines about hard links, directories and symlinks."""
    return [line for line in lines if not FILTERED_LINES.match(line)]


def split_at_mark(lines):
    """Separate report lines at the first mark line.

    Returns:
        Tuple of (lines before the mark, lines after the mark or None if
            there is no mark line)
    """
    for index, line in enumerate(lines):
        if line == MARK:
            return lines[:index], lines[index + 1:]
    return lines, None


def make_subject(command, source, hostname, status):
    subject = f"{command}: {source} on {hostname}"
    if status == 0:
        return f"{subject} (Success)"
    return f"{subject} (Failure: {ERROR_STR.get(status, ERROR_STR[1])})"


def make_message(mailto, subject, lines, compress=True):
    """Build the report mail.

    Args:
        mailto: recipient address
        subject: mail subject
        lines: report lines, possibly including a mark line
        compress: boolean; gzip the attachment

    Returns:
        email.mime.multipart.MIMEMultipart object
    """
    body, attachment = split_at_mark(lines)
    message = MIMEMultipart("mixed")
    message["To"] = mailto
    message["Subject"] = subject
    message.attach(MIMEText("\n".join(body) + "\n", "plain", "utf-8"))

    # The detailed log is attached only when a mark line was found
    if attachment is not None:
        data = ("\n".join(attachment) + "\n").encode("utf-8")
        if compress:
            part = MIMEApplication(gzip.compress(data), "gzip")
            filename = ATTACHMENT_NAME + ".gz"
        else:
            part = MIMEText(data.decode("utf-8"), "plain", "utf-8")
            filename = ATTACHMENT_NAME
        part.add_header("Content-Disposition", "attachment",
                        filename=filename)
        message.attach(part)
    return message


def send_mail(message):
    """Hand a message over to the local MTA.

    Raises:
        subprocess.CalledProcessError: sendmail failed
    """
    subprocess.run(["sendmail", "-i", "-t"], input=message.as_bytes(),
                   check=True)


def deliver(lines, mailto, subject, compress=True):
    """Mail the report if there is a recipient, print it otherwise."""
    if mailto:
        send_mail(make_message(mailto, subject, lines, compress=compress))
        return
    for line in lines:
        if line != MARK:
            print(line)
