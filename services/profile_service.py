"""
External profile lookup (Twitter API v2).

Lookups never raise for expected outcomes: they return a ProfileLookupResult
tagged found / not_found / error so callers can tell a missing account apart
from an upstream failure.
"""
import logging
import os
from dataclasses import dataclass
from typing import Optional

import requests as http_requests

logger = logging.getLogger('relay.profiles')

USER_FIELDS = 'name,description,profile_image_url,id'

FOUND = 'found'
NOT_FOUND = 'not_found'
ERROR = 'error'


@dataclass
class Profile:
    display_name: str
    bio: str
    avatar_url: str
    external_id: str


@dataclass
class ProfileLookupResult:
    status: str
    profile: Optional[Profile] = None
    reason: Optional[str] = None

    @classmethod
    def found(cls, profile: Profile):
        return cls(FOUND, profile=profile)

    @classmethod
    def not_found(cls):
        return cls(NOT_FOUND)

    @classmethod
    def error(cls, reason: str):
        return cls(ERROR, reason=reason)

    @property
    def is_found(self) -> bool:
        return self.status == FOUND

    @property
    def is_not_found(self) -> bool:
        return self.status == NOT_FOUND


class ProfileService:
    def __init__(self, api_base=None, bearer_token=None, timeout=None):
        self.api_base = (api_base or os.environ.get('TWITTER_API_BASE', 'https://api.twitter.com')).rstrip('/')
        self.bearer_token = bearer_token if bearer_token is not None else os.environ.get('TWITTER_BEARER_TOKEN', '')
        self.timeout = timeout or int(os.environ.get('PROFILE_LOOKUP_TIMEOUT', '10'))

    def __repr__(self):
        return f"ProfileService(api_base={self.api_base!r}, configured={self.is_configured()})"

    def is_configured(self) -> bool:
        return bool(self.bearer_token)

    def lookup_by_handle(self, handle: str) -> ProfileLookupResult:
        clean = (handle or '').strip().lstrip('@')
        if not clean:
            return ProfileLookupResult.not_found()
        return self._get(f"/2/users/by/username/{clean}")

    def lookup_by_id(self, external_id: str) -> ProfileLookupResult:
        if not external_id:
            return ProfileLookupResult.not_found()
        return self._get(f"/2/users/{external_id}")

    def _get(self, path: str) -> ProfileLookupResult:
        if not self.is_configured():
            logger.warning("Profile lookup not configured (TWITTER_BEARER_TOKEN unset)")
            return ProfileLookupResult.error("Profile lookup not configured")

        try:
            resp = http_requests.get(
                f"{self.api_base}{path}",
                params={'user.fields': USER_FIELDS},
                headers={'Authorization': f'Bearer {self.bearer_token}'},
                timeout=self.timeout,
            )
        except http_requests.RequestException as e:
            logger.warning("Profile lookup request failed for %s: %s", path, e)
            return ProfileLookupResult.error("Profile lookup unavailable")

        if resp.status_code == 404:
            return ProfileLookupResult.not_found()
        if resp.status_code in (401, 403):
            logger.error("Profile lookup rejected credentials (HTTP %d). Check TWITTER_BEARER_TOKEN",
                         resp.status_code)
            return ProfileLookupResult.error("Profile lookup authentication failed")
        if resp.status_code == 429:
            logger.warning("Profile lookup rate limited")
            return ProfileLookupResult.error("Profile lookup rate limited")
        if resp.status_code != 200:
            logger.warning("Profile lookup returned HTTP %d for %s", resp.status_code, path)
            return ProfileLookupResult.error(f"Profile lookup failed (HTTP {resp.status_code})")

        try:
            body = resp.json()
        except ValueError:
            logger.warning("Profile lookup returned a non-JSON body for %s", path)
            return ProfileLookupResult.error("Profile lookup returned an invalid response")

        # Unknown usernames come back as 200 with an "errors" array and no "data"
        data = body.get('data') if isinstance(body, dict) else None
        if not data:
            return ProfileLookupResult.not_found()

        return ProfileLookupResult.found(Profile(
            display_name=data.get('name') or '',
            bio=data.get('description') or '',
            avatar_url=data.get('profile_image_url') or '',
            external_id=str(data.get('id') or ''),
        ))


_profile_service = None

def get_profile_service() -> ProfileService:
    global _profile_service
    if _profile_service is None:
        _profile_service = ProfileService()
    return _profile_service
