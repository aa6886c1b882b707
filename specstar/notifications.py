"""
Desktop notifications for specstar.

Uses notify-send (freedesktop compliant). Silently skipped when notify-send
is not installed.
"""

import logging
import shutil
import subprocess

from specstar.sessions.events import NotificationKind, SessionNotification
from specstar.sessions.pool import SessionPoolListener

logger = logging.getLogger(__name__)

APP_NAME = "specstar"
VALID_URGENCIES = ("low", "normal", "critical")
MAX_NOTIFICATION_LENGTH = 200


def _truncate(text: str) -> str:
    if len(text) > MAX_NOTIFICATION_LENGTH:
        return text[:MAX_NOTIFICATION_LENGTH] + "..."
    return text


def notify(title: str, message: str, urgency: str = "normal") -> None:
    if urgency not in VALID_URGENCIES:
        logger.warning(f"Invalid urgency '{urgency}', using 'normal'")
        urgency = "normal"

    if not shutil.which("notify-send"):
        logger.debug("notify-send not found, skipping notification")
        return

    try:
        result = subprocess.run(
            ["notify-send", "--urgency", urgency, "--app-name", APP_NAME, title, _truncate(message)],
            capture_output=True, text=True, timeout=5,
        )
        if result.returncode != 0:
            logger.warning(f"notify-send failed (exit {result.returncode}): {result.stderr}")
    except subprocess.TimeoutExpired:
        logger.warning("notify-send timed out")
    except OSError as e:
        logger.warning(f"Failed to run notify-send: {e}")


def notify_approval_needed(session_name: str, tool_name: str) -> None:
    notify(f"specstar: {session_name}", f"Approval needed: {tool_name}", "critical")


def notify_session_error(session_name: str, message: str) -> None:
    notify(f"specstar: {session_name}", f"Error: {message}", "critical")


def notify_session_completed(session_name: str) -> None:
    notify(f"specstar: {session_name}", "Session completed", "low")


def notify_workflow_completed(workflow_id: str) -> None:
    notify(f"specstar: {workflow_id}", "Workflow completed", "low")


def notify_workflow_failed(workflow_id: str, error: str) -> None:
    notify(f"specstar: {workflow_id}", f"Workflow failed: {error}", "critical")


def send_session_notification(notification: SessionNotification) -> None:
    if notification.kind is NotificationKind.APPROVAL_NEEDED:
        tool = notification.tool_call.tool_name if notification.tool_call else notification.message
        notify_approval_needed(notification.session_name, tool)
    elif notification.kind is NotificationKind.ERROR:
        notify_session_error(notification.session_name, notification.message)
    else:
        notify_session_completed(notification.session_name)


class DesktopNotifier(SessionPoolListener):
    """Pool listener that forwards session notifications to the desktop."""

    def on_notification(self, notification: SessionNotification) -> None:
        send_session_notification(notification)
