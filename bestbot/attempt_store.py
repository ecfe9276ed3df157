"""
Persistent storage for finished purchase attempts.
"""

import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from bestbot import config

MAX_ITEMS = int(os.getenv("MAX_ATTEMPT_ITEMS", "200"))

_lock = threading.Lock()


def load_attempts(path: Optional[Path] = None) -> List[Dict[str, Any]]:
    """Load attempt history from file."""
    path = Path(path or config.ATTEMPTS_FILE)
    if not path.exists():
        return []
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except json.JSONDecodeError:
        # A torn write must not take the monitor down; start a fresh log
        return []
    return data if isinstance(data, list) else []


def save_attempts(items: List[Dict[str, Any]], path: Optional[Path] = None) -> None:
    """Save attempt history to file."""
    path = Path(path or config.ATTEMPTS_FILE)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(items[-MAX_ITEMS:], f, indent=2)


def add_attempt(item: Dict[str, Any], path: Optional[Path] = None) -> None:
    """Append a finished attempt to the history."""
    with _lock:
        items = load_attempts(path)
        items.append(item)
        save_attempts(items, path)


def attempts_for(target: str, path: Optional[Path] = None) -> List[Dict[str, Any]]:
    return [item for item in load_attempts(path) if item.get("target") == target]
