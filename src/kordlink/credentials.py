"""Session credential resolution and persistence.

Resolution order (first match wins):

1. ``session_id`` starts with the remote prefix → fetch the credential JSON
   from the dashboard by reference and write it to ``creds.json``.
2. ``session_id`` is set otherwise → treat it as a base64 blob of
   ``creds.json`` and write it out (overwrites any stale copy).
3. ``creds.json`` already exists → use it as-is.
4. Nothing → start empty; the transport runs first-time pairing.

Failures in (1) and (2) raise :class:`CredentialResolutionError`: a
configured session id is explicit intent, so there is no fall-through.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
from pathlib import Path
from typing import Any

import aiohttp

from kordlink.errors import CredentialResolutionError
from kordlink.logger import logger
from kordlink.types import CredentialSource, SessionCredentials
from kordlink.utils import write_text_atomic

CREDS_FILE = "creds.json"

# Prefixes of per-device key files that go stale and can be pruned.
_STALE_KEY_PREFIXES = ("pre-key-", "session-")


class CredentialStore:
    """Owns the single authoritative copy of the session credentials."""

    def __init__(
        self,
        session_dir: Path,
        session_ref: str = "",
        *,
        remote_prefix: str = "kord_ai-",
        dashboard_url: str = "",
        api_key: str = "",
        timeout: float = 5.0,
    ) -> None:
        self.session_dir = session_dir
        self._session_ref = session_ref.strip()
        self._remote_prefix = remote_prefix
        self._dashboard_url = dashboard_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._resolved: SessionCredentials | None = None
        self._write_lock = asyncio.Lock()

    @property
    def creds_path(self) -> Path:
        return self.session_dir / CREDS_FILE

    @property
    def current(self) -> SessionCredentials | None:
        return self._resolved

    async def resolve(self) -> SessionCredentials:
        """Return the session credentials, resolving them on first call.

        Later calls (reconnects) return the in-memory copy that
        :meth:`update` keeps current, so a reconnect never re-fetches or
        re-decodes over credentials the transport has since rotated.
        """
        if self._resolved is not None:
            return self._resolved

        ref = self._session_ref
        if ref and ref.startswith(self._remote_prefix):
            logger.info("Remote session id detected, fetching credentials")
            creds = await self._fetch_remote(ref.removeprefix(self._remote_prefix))
            await asyncio.to_thread(self._write_creds, json.dumps(creds, indent=2))
            logger.info("Fetched and saved credentials from dashboard")
            source = CredentialSource.REMOTE
        elif ref:
            logger.info("Using base64 encoded session id from config")
            text, creds = _decode_blob(ref)
            await asyncio.to_thread(self._write_creds, text)
            source = CredentialSource.BLOB
        elif self.creds_path.exists():
            creds = self._read_local()
            source = CredentialSource.LOCAL if creds else CredentialSource.NONE
            if creds:
                logger.info("Using existing credentials", path=str(self.creds_path))
        else:
            logger.warning("No session id or saved credentials found, pairing will be required")
            creds = {}
            source = CredentialSource.NONE

        self._resolved = SessionCredentials(
            session_dir=self.session_dir, creds=creds, source=source
        )
        return self._resolved

    async def update(self, partial: dict[str, Any]) -> None:
        """Merge *partial* into the active credentials and persist atomically."""
        async with self._write_lock:
            if self._resolved is None:
                self._resolved = SessionCredentials(session_dir=self.session_dir)
            self._resolved.creds.update(partial)
            text = json.dumps(self._resolved.creds, indent=2)
            await asyncio.to_thread(self._write_creds, text)
        logger.debug("Credentials updated", fields=sorted(partial))

    def prune_stale_keys(self) -> list[str]:
        """Delete stale pre-key and session key files; return the names removed."""
        if not self.session_dir.is_dir():
            return []
        removed: list[str] = []
        for path in sorted(self.session_dir.iterdir()):
            name = path.name
            if not path.is_file() or name == "session.json":
                continue
            if name.startswith(_STALE_KEY_PREFIXES):
                try:
                    path.unlink()
                except OSError as exc:
                    logger.warning("Failed to delete key file", file=name, err=str(exc))
                    continue
                removed.append(name)
                logger.info("Deleted old key file", file=name)
        return removed

    # ------------------------------------------------------------------

    async def _fetch_remote(self, reference: str) -> dict[str, Any]:
        url = f"{self._dashboard_url}/api/files/fetch/{reference}"
        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as session:
                async with session.get(url, params={"apikey": self._api_key}) as resp:
                    if resp.status != 200:
                        body = await resp.text()
                        msg = f"credential fetch returned HTTP {resp.status}: {body[:200]}"
                        raise CredentialResolutionError(msg)
                    payload = await resp.json(content_type=None)
        except CredentialResolutionError:
            logger.error("Error fetching credentials from dashboard", reference=reference)
            raise
        except (aiohttp.ClientError, TimeoutError, ValueError) as exc:
            logger.error("Error fetching credentials from dashboard", err=str(exc))
            raise CredentialResolutionError("Failed to fetch credentials from API") from exc

        if not isinstance(payload, dict) or payload.get("status") != "success":
            logger.error("Dashboard rejected credential fetch", payload=str(payload)[:200])
            raise CredentialResolutionError("Invalid or missing data in API response")
        data = payload.get("data")
        if not isinstance(data, dict) or not data:
            logger.error("Invalid or missing data in dashboard response")
            raise CredentialResolutionError("Invalid or missing data in API response")
        return data

    def _read_local(self) -> dict[str, Any]:
        try:
            data = json.loads(self.creds_path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(
                "Saved credentials unreadable, pairing will be required",
                path=str(self.creds_path),
                err=str(exc),
            )
            return {}
        return data if isinstance(data, dict) else {}

    def _write_creds(self, text: str) -> None:
        write_text_atomic(self.creds_path, text)


def _decode_blob(blob: str) -> tuple[str, dict[str, Any]]:
    """Decode a base64 ``creds.json`` blob; returns (raw text, parsed dict).

    Whitespace and line breaks are ignored and missing padding is restored.
    """
    compact = "".join(blob.split())
    compact += "=" * (-len(compact) % 4)
    try:
        text = base64.b64decode(compact).decode("utf-8")
        creds = json.loads(text)
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CredentialResolutionError("Session id is not a valid base64 credential blob") from exc
    if not isinstance(creds, dict):
        raise CredentialResolutionError("Decoded session id is not a JSON object")
    return text, creds
