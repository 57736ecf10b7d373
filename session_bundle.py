# session_bundle.py
"""
Read-only access to a pre-captured session bundle.

The bundle is a browser storage-state JSON document produced out of band by an
interactive login (cookies plus per-origin localStorage). Flows only read it;
they never log in and never refresh it.
"""

import json
import logging
import time
from http.cookies import CookieError, SimpleCookie
from pathlib import Path
from typing import List, Optional

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from yarl import URL

logger = logging.getLogger("LoadRunner.session")


class SessionSetupError(Exception):
    """The session bundle could not be turned into a usable request context."""


class StoredCookie(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    value: str
    domain: str
    path: str = "/"
    expires: float = Field(default=-1, description="Epoch seconds, -1 for session cookies")
    httpOnly: bool = False
    secure: bool = False
    sameSite: Optional[str] = None

    def is_expired(self, now: Optional[float] = None) -> bool:
        if self.expires is None or self.expires < 0:
            return False
        return self.expires <= (time.time() if now is None else now)


class LocalStorageEntry(BaseModel):
    name: str
    value: str


class StoredOrigin(BaseModel):
    model_config = ConfigDict(extra="ignore")

    origin: str
    localStorage: List[LocalStorageEntry] = Field(default_factory=list)


class SessionBundle(BaseModel):
    model_config = ConfigDict(extra="ignore")

    cookies: List[StoredCookie] = Field(default_factory=list)
    origins: List[StoredOrigin] = Field(default_factory=list)

    @classmethod
    def load(cls, path: str) -> 'SessionBundle':
        """Parses and validates the bundle at path. Raises SessionSetupError."""
        bundle_path = Path(path)
        try:
            raw = bundle_path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise SessionSetupError(f"Session bundle not found at '{bundle_path}'. Capture it before starting the run.") from e
        except OSError as e:
            raise SessionSetupError(f"Cannot read session bundle '{bundle_path}': {e}") from e
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise SessionSetupError(f"Session bundle '{bundle_path}' is not valid JSON: {e}") from e
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise SessionSetupError(f"Session bundle '{bundle_path}' has an unexpected structure: {e}") from e

    def active_cookies(self, now: Optional[float] = None) -> List[StoredCookie]:
        return [c for c in self.cookies if not c.is_expired(now)]

    def build_cookie_jar(self) -> aiohttp.CookieJar:
        """
        Creates a fresh cookie jar holding the bundle's unexpired cookies.
        Each flow gets its own jar so flows never share server-set cookies.
        """
        # unsafe=True accepts cookies for IP-address hosts
        jar = aiohttp.CookieJar(unsafe=True)
        skipped = 0
        for stored in self.cookies:
            if stored.is_expired():
                skipped += 1
                continue
            domain = stored.domain.lstrip('.')
            if not domain:
                logger.warning(f"Skipping cookie '{stored.name}' without a domain.")
                skipped += 1
                continue
            cookie = SimpleCookie()
            try:
                cookie[stored.name] = stored.value
            except CookieError as e:
                logger.warning(f"Skipping cookie '{stored.name}' with an illegal name: {e}")
                skipped += 1
                continue
            morsel = cookie[stored.name]
            morsel["domain"] = stored.domain
            morsel["path"] = stored.path or "/"
            if stored.secure:
                morsel["secure"] = True
            if stored.httpOnly:
                morsel["httponly"] = True
            scheme = "https" if stored.secure else "http"
            jar.update_cookies(cookie, response_url=URL.build(scheme=scheme, host=domain, path=morsel["path"]))
        if skipped:
            logger.debug(f"Session bundle: {skipped} cookie(s) skipped (expired or invalid).")
        return jar
