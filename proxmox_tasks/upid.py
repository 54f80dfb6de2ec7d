"""
Parsing of Proxmox task identifiers (UPIDs).

A UPID looks like::

    UPID:pve-test:002860A9:051E01C1:67536165:qmmove:102:root@pam:

with the fields node, pid, pstart, start time (all hex after the node),
operation type, resource id and the user that started the task.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone

from .errors import UPIDParseError

UPID_PREFIX = "UPID"
# prefix + 7 fields + empty trailing field
_FIELD_COUNT = 9


@dataclass(frozen=True)
class UserID:
    """A Proxmox user in ``name@realm`` form."""

    name: str = ""
    realm: str = ""

    @classmethod
    def parse(cls, user_id: str) -> "UserID":
        index = user_id.find("@")
        if index <= 0 or index == len(user_id) - 1:
            raise UPIDParseError(user_id, "user must be in name@realm form")
        return cls(name=user_id[:index], realm=user_id[index + 1:])

    def __str__(self) -> str:
        if not self.name and not self.realm:
            return ""
        return f"{self.name}@{self.realm}"


@dataclass(frozen=True)
class UPID:
    raw: str
    node: str = ""
    pid: int = 0
    pstart: int = 0
    start_time: int = 0
    operation_type: str = ""
    resource_id: str = ""
    user: UserID = field(default_factory=UserID)

    @property
    def started_at(self) -> datetime:
        return datetime.fromtimestamp(self.start_time, tz=timezone.utc)

    def __str__(self) -> str:
        return self.raw


def _hex(raw: str, name: str, value: str) -> int:
    try:
        return int(value, 16)
    except ValueError:
        raise UPIDParseError(raw, f"{name} {value!r} is not hexadecimal") from None


def parse_upid(raw: str) -> UPID:
    """Parse a UPID, raising UPIDParseError if it is malformed."""
    if not isinstance(raw, str):
        raise UPIDParseError(repr(raw), "not a string")
    parts = raw.split(":")
    if parts[0] != UPID_PREFIX:
        raise UPIDParseError(raw, f"missing {UPID_PREFIX}: prefix")
    if len(parts) != _FIELD_COUNT or parts[-1] != "":
        raise UPIDParseError(
            raw, f"expected {_FIELD_COUNT - 2} colon separated fields and a trailing colon"
        )
    node, pid, pstart, starttime, op_type, resource_id, user = parts[1:8]
    if not node:
        raise UPIDParseError(raw, "empty node")
    if not op_type:
        raise UPIDParseError(raw, "empty operation type")
    try:
        user_id = UserID.parse(user)
    except UPIDParseError as e:
        raise UPIDParseError(raw, e.reason) from None
    return UPID(
        raw=raw,
        node=node,
        pid=_hex(raw, "pid", pid),
        pstart=_hex(raw, "pstart", pstart),
        start_time=_hex(raw, "starttime", starttime),
        operation_type=op_type,
        resource_id=resource_id,
        user=user_id,
    )


def parse_upid_lenient(raw: str) -> UPID:
    """Best-effort parse: never raises, unknown fields are left empty."""
    try:
        return parse_upid(raw)
    except UPIDParseError:
        pass
    parts = (raw or "").split(":")
    parts += [""] * (_FIELD_COUNT - len(parts))

    def hex_or_zero(value: str) -> int:
        try:
            return int(value, 16)
        except ValueError:
            return 0

    name, _, realm = parts[7].partition("@")
    return UPID(
        raw=raw or "",
        node=parts[1],
        pid=hex_or_zero(parts[2]),
        pstart=hex_or_zero(parts[3]),
        start_time=hex_or_zero(parts[4]),
        operation_type=parts[5],
        resource_id=parts[6],
        user=UserID(name=name, realm=realm),
    )
