"""
Inbound request hints.

Accepts the camelCase shape browsers and the HTTP layer send
(opaqueBrowserToken, identityHeader{deviceId, userGuid, ...}, ...) as well as
snake_case. The identity header may arrive as its raw JSON string.
Anything malformed raises devicemesh.errors.ValidationError before the store
is touched.
"""

import ipaddress
import json
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from devicemesh.errors import ValidationError
from devicemesh.fingerprint.snapshot import FingerprintSnapshot
from devicemesh.storage.device_store import BROWSER_TOKEN, HEX64

MAX_HANDLE_LENGTH = 128


class _HintModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    @field_validator("*", mode="before")
    @classmethod
    def blank_is_absent(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip()
            return value or None
        return value


class IdentityHeader(_HintModel):
    device_id: str = Field(alias="deviceId")
    user_guid: Optional[str] = Field(default=None, alias="userGuid", max_length=MAX_HANDLE_LENGTH)
    user_handle: Optional[str] = Field(default=None, alias="userHandle", max_length=MAX_HANDLE_LENGTH)
    device_characteristics: Optional[dict] = Field(default=None, alias="deviceCharacteristics")

    @field_validator("device_id")
    @classmethod
    def device_id_is_hex64(cls, value: str) -> str:
        if not HEX64.match(value):
            raise ValueError("deviceId must be 64 lowercase hex characters")
        return value

    @property
    def characteristics(self) -> Optional[FingerprintSnapshot]:
        if not self.device_characteristics:
            return None
        snapshot = FingerprintSnapshot.from_mapping(self.device_characteristics)
        return None if snapshot.is_empty() else snapshot

    @property
    def claims_identity(self) -> bool:
        return bool(self.user_guid or self.user_handle)


class OwnerContext(_HintModel):
    """Who the current session belongs to, if anyone."""
    handle: Optional[str] = Field(default=None, max_length=MAX_HANDLE_LENGTH)
    guid: Optional[str] = Field(default=None, max_length=MAX_HANDLE_LENGTH)
    phone: Optional[str] = Field(default=None, max_length=32)
    previous_handle: Optional[str] = Field(default=None, alias="previousHandle", max_length=MAX_HANDLE_LENGTH)
    previous_guid: Optional[str] = Field(default=None, alias="previousGuid", max_length=MAX_HANDLE_LENGTH)
    previous_phone: Optional[str] = Field(default=None, alias="previousPhone", max_length=32)

    @property
    def has_current(self) -> bool:
        return bool(self.handle or self.guid or self.phone)

    @property
    def has_previous(self) -> bool:
        return bool(self.previous_handle or self.previous_guid or self.previous_phone)

    def current(self) -> dict:
        return {"handle": self.handle, "guid": self.guid, "phone": self.phone}

    def previous(self) -> dict:
        return {"handle": self.previous_handle, "guid": self.previous_guid, "phone": self.previous_phone}


class RequestHints(_HintModel):
    opaque_browser_token: Optional[str] = Field(default=None, alias="opaqueBrowserToken")
    identity_header: Optional[IdentityHeader] = Field(default=None, alias="identityHeader")
    session_owner_context: Optional[OwnerContext] = Field(default=None, alias="sessionOwnerContext")
    request_ip: Optional[str] = Field(default=None, alias="requestIp")
    user_agent: Optional[str] = Field(default=None, alias="userAgent", max_length=1024)

    @field_validator("opaque_browser_token")
    @classmethod
    def token_shape(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not BROWSER_TOKEN.match(value):
            raise ValueError("opaqueBrowserToken is malformed")
        return value

    @field_validator("identity_header", mode="before")
    @classmethod
    def header_from_json(cls, value: Any) -> Any:
        if isinstance(value, (str, bytes)):
            try:
                value = json.loads(value)
            except ValueError:
                raise ValueError("identityHeader is not valid JSON") from None
        return value

    @field_validator("request_ip")
    @classmethod
    def ip_shape(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            ipaddress.ip_address(value)
        return value

    @classmethod
    def parse(cls, data: Any) -> "RequestHints":
        if isinstance(data, RequestHints):
            return data
        if data is None:
            data = {}
        try:
            return cls.model_validate(data)
        except PydanticValidationError as exc:
            error = exc.errors()[0]
            field = ".".join(str(part) for part in error.get("loc", ())) or None
            raise ValidationError(f"Invalid request hints: {error.get('msg')}", field=field) from exc
