"""Helpers for constructing and parsing NATS subjects for command patterns.

Services on the bus address each other with message patterns of the form
``{"cmd": "<command>"}``; the subject is the compact JSON of that pattern.
"""

import json
from typing import Any, Dict, Optional


def command_pattern(command: str) -> Dict[str, str]:
    return {"cmd": command}


def format_subject(pattern: Dict[str, Any]) -> str:
    return json.dumps(pattern, separators=(",", ":"), sort_keys=True)


def cmd_subject(command: str) -> str:
    return format_subject(command_pattern(command))


def parse_command(subject: str) -> Optional[str]:
    try:
        pattern = json.loads(subject)
    except ValueError:
        return None
    if not isinstance(pattern, dict):
        return None
    cmd = pattern.get("cmd")
    return str(cmd) if cmd else None
