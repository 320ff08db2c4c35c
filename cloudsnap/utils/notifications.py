"""
Run notifications.

Executors talk to a notifier through notify_success, notify_failure and
notify_warning. DesktopNotifier shells out to osascript (macOS) or
notify-send (Linux); delivery failures are logged and otherwise ignored.
"""

import sys
import shutil
import logging
import subprocess
from typing import List


logger = logging.getLogger(__name__)

APP_NAME = 'cloudsnap'


class Notifier:
    """Base notifier; does nothing."""

    def notify_success(self, operation: str, details: str = ''):
        pass

    def notify_failure(self, operation: str, details: str = ''):
        pass

    def notify_warning(self, operation: str, details: str = ''):
        pass


class NullNotifier(Notifier):
    pass


def _applescript_string(value: str) -> str:
    return '"' + value.replace('\\', '\\\\').replace('"', '\\"') + '"'


class DesktopNotifier(Notifier):
    """Desktop notifications through the platform's command-line tool."""

    def __init__(self, timeout: int = 10):
        self.timeout = timeout

    def _command(self, title: str, message: str) -> List[str]:
        if sys.platform == 'darwin':
            script = f"display notification {_applescript_string(message)} with title {_applescript_string(title)}"
            return ['osascript', '-e', script]
        if shutil.which('notify-send'):
            return ['notify-send', '--app-name', APP_NAME, title, message]
        return []

    def _send(self, title: str, message: str):
        command = self._command(title, message)
        if not command:
            logger.debug("No desktop notification tool available")
            return
        try:
            subprocess.run(command, check=True, capture_output=True, timeout=self.timeout)
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Failed to send notification: {e}")

    def notify_success(self, operation: str, details: str = ''):
        self._send(f"{APP_NAME}: {operation} completed", details or 'Completed successfully')

    def notify_failure(self, operation: str, details: str = ''):
        self._send(f"{APP_NAME}: {operation} failed", details or 'Failed')

    def notify_warning(self, operation: str, details: str = ''):
        self._send(f"{APP_NAME}: {operation} finished with warnings", details or 'Check the log for details')


def create_notifier(enabled: bool) -> Notifier:
    return DesktopNotifier() if enabled else NullNotifier()
