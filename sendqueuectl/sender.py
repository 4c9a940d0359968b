import json
import shlex
import subprocess
import sys
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

import structlog

from .errors import ErrorKind, SendError
from .retry import extract_status

logger = structlog.get_logger()


@dataclass
class SendOutcome:
    message_id: str
    thread_id: str


class Sender(Protocol):
    def send(self, draft_id: str) -> SendOutcome: ...


class StubSender:
    """Pretends every draft went out. `failures` maps draft_id -> error to raise instead."""

    def __init__(self, failures: Optional[Dict[str, Exception]] = None):
        self.failures = dict(failures or {})
        self.sent = []

    def send(self, draft_id: str) -> SendOutcome:
        if draft_id in self.failures:
            raise self.failures[draft_id]
        self.sent.append(draft_id)
        return SendOutcome(message_id=f"stub-msg-{draft_id}", thread_id=f"stub-thread-{draft_id}")


class CommandSender:
    """
    Delivers a draft by running an external command.

    The command template gets `{draft_id}` substituted and must print
    {"message_id": ..., "thread_id": ...} on stdout. Anything else is a
    SendError whose text (usually stderr) feeds the retry classification.
    """

    def __init__(self, command_template: str, timeout: int = 20):
        if not command_template or "{draft_id}" not in command_template:
            raise ValueError("send_command must contain a {draft_id} placeholder")
        self.command_template = command_template
        self.timeout = timeout

    def _args(self, draft_id: str):
        template_args = shlex.split(self.command_template, posix=(sys.platform != "win32"))
        return [a.replace("{draft_id}", draft_id) for a in template_args]

    def send(self, draft_id: str) -> SendOutcome:
        args = self._args(draft_id)
        try:
            result = subprocess.run(args, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            raise SendError(f"Send command timed out after {self.timeout}s", status=504,
                            kind=ErrorKind.TRANSIENT)
        except FileNotFoundError:
            raise SendError(f"Send command not found: {args[0]}", kind=ErrorKind.FATAL)

        if result.returncode != 0:
            text = (result.stderr or result.stdout or "").strip() or f"exit_code={result.returncode}"
            logger.debug("send_command_failed", draft_id=draft_id, returncode=result.returncode)
            raise SendError(text[:500], status=extract_status(text))

        try:
            payload = json.loads(result.stdout)
            return SendOutcome(message_id=str(payload["message_id"]), thread_id=str(payload["thread_id"]))
        except (ValueError, KeyError, TypeError):
            raise SendError("Send command returned unparseable output", kind=ErrorKind.FATAL)
