"""Data models for kordlink."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum, StrEnum
from pathlib import Path
from typing import Any

# Stub code the service uses for a revoked ("deleted for everyone") message.
REVOKE_STUB_TYPE = 2


class ConnectionState(StrEnum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "close"


class DisconnectReason(IntEnum):
    """Close codes reported by the messaging service."""

    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    TIMED_OUT = 408
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411
    FORBIDDEN = 403
    UNAVAILABLE_SERVICE = 503


class CredentialSource(StrEnum):
    REMOTE = "remote"
    BLOB = "blob"
    LOCAL = "local"
    NONE = "none"


@dataclass
class SessionCredentials:
    """Authentication material for one session directory.

    ``creds`` is the decoded content of ``creds.json``; per-device signal
    keys live next to it as individual files (see ``transport.keys``).
    """

    session_dir: Path
    creds: dict[str, Any] = field(default_factory=dict)
    source: CredentialSource = CredentialSource.NONE
    # Set once a transport has materialised these credentials on disk.
    applied: bool = False

    @property
    def registered(self) -> bool:
        return bool(self.creds.get("registered"))

    @property
    def creds_path(self) -> Path:
        return self.session_dir / "creds.json"


@dataclass(frozen=True)
class MessageKey:
    remote_jid: str
    id: str
    from_me: bool = False
    participant: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> MessageKey:
        return cls(
            remote_jid=raw["remote_jid"],
            id=raw["id"],
            from_me=bool(raw.get("from_me", False)),
            participant=raw.get("participant"),
        )


@dataclass
class WAMessage:
    """One message record as seen on the event stream and kept in the store."""

    key: MessageKey
    message: dict[str, Any] | None = None
    timestamp: int = 0  # seconds since epoch
    push_name: str | None = None
    status: int | None = None
    stub_type: int | None = None
    revoked: bool = False

    @property
    def text(self) -> str:
        msg = self.message or {}
        return (
            msg.get("conversation")
            or (msg.get("extendedTextMessage") or {}).get("text")
            or (msg.get("imageMessage") or {}).get("caption")
            or (msg.get("videoMessage") or {}).get("caption")
            or ""
        )

    def apply_update(self, update: dict[str, Any]) -> None:
        """Merge a ``messages.update`` body into this record.

        A ``message: None`` update (revoke) keeps the original body so it can
        still be recovered from the store; the record is flagged instead.
        """
        if "message" in update:
            if update["message"] is None:
                self.revoked = True
            else:
                self.message = update["message"]
        if "status" in update:
            self.status = update["status"]
        if "messageStubType" in update:
            self.stub_type = update["messageStubType"]
            if self.stub_type == REVOKE_STUB_TYPE:
                self.revoked = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": {
                "remote_jid": self.key.remote_jid,
                "id": self.key.id,
                "from_me": self.key.from_me,
                "participant": self.key.participant,
            },
            "message": self.message,
            "timestamp": self.timestamp,
            "push_name": self.push_name,
            "status": self.status,
            "stub_type": self.stub_type,
            "revoked": self.revoked,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> WAMessage:
        return cls(
            key=MessageKey.from_dict(raw["key"]),
            message=raw.get("message"),
            timestamp=int(raw.get("timestamp") or 0),
            push_name=raw.get("push_name"),
            status=raw.get("status"),
            stub_type=raw.get("stub_type"),
            revoked=bool(raw.get("revoked", False)),
        )


@dataclass
class MessageUpdate:
    key: MessageKey
    update: dict[str, Any] = field(default_factory=dict)

    @property
    def is_deletion(self) -> bool:
        if "message" in self.update and self.update["message"] is None:
            return True
        return self.update.get("messageStubType") == REVOKE_STUB_TYPE


@dataclass
class DisconnectInfo:
    status_code: int | None = None
    reason: str = ""
