"""Customer identity passed into the start-or-resume call."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_IDENTITY_PATH = Path.home() / ".livechat" / "identity.json"


class IdentityNotReady(Exception):
    """Raised when a chat is started before the customer identity is fully loaded."""


@dataclass(frozen=True)
class CustomerIdentity:
    user_id: int | str
    name: str
    email: str = ""
    phone: Optional[str] = None

    def is_ready(self) -> bool:
        if self.user_id is None or self.user_id == "":
            return False
        return bool(self.name and self.name.strip())

    def start_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "userId": self.user_id,
            "customerName": self.name,
            "customerEmail": self.email,
        }
        if self.phone:
            payload["customerPhone"] = self.phone
        return payload


def require_ready(identity: Optional[CustomerIdentity]) -> CustomerIdentity:
    if identity is None or not identity.is_ready():
        raise IdentityNotReady("customer identity must be loaded before starting a chat")
    return identity


def identity_from_dict(data: Dict[str, Any]) -> CustomerIdentity:
    user_id = data.get("id", data.get("user_id"))
    name = data.get("name")
    if not isinstance(user_id, (int, str)) or isinstance(user_id, bool) or not isinstance(name, str):
        raise IdentityNotReady("identity profile requires id and name")
    phone = data.get("phone")
    return require_ready(
        CustomerIdentity(
            user_id=user_id,
            name=name,
            email=str(data.get("email") or ""),
            phone=str(phone) if phone else None,
        )
    )


def load_identity(path: Path | str = DEFAULT_IDENTITY_PATH) -> CustomerIdentity:
    """Load the customer profile from a JSON file.

    Missing files, malformed JSON and partial profiles all raise
    :class:`IdentityNotReady` so callers can gate the chat on it.
    """

    path = Path(path).expanduser()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise IdentityNotReady(f"no identity profile at {path}") from exc
    except json.JSONDecodeError as exc:
        raise IdentityNotReady(f"identity profile at {path} is not valid JSON") from exc
    if not isinstance(data, dict):
        raise IdentityNotReady(f"identity profile at {path} must be an object")
    return identity_from_dict(data)
