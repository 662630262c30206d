from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .exceptions import ValidationError

Bucket = Literal["liked", "neutral", "disliked"]


def _trimmed(value: Any, field_name: str, *, required: bool = True) -> Optional[str]:
    if value is None:
        if required:
            raise ValueError(f"{field_name} is required")
        return None
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string")
    trimmed = value.strip()
    if not trimmed:
        if required:
            raise ValueError(f"{field_name} must not be empty")
        return None
    return trimmed


def _parse_provider_date(raw: Any) -> Optional[date]:
    """Parse the date formats the catalog providers return.

    setlist.fm sends ``dd-MM-yyyy``, SoundCloud ``yyyy/MM/dd HH:mm:ss +0000``
    and YouTube ISO-8601 timestamps. Unparseable values become ``None``.
    """

    if not isinstance(raw, str) or not raw.strip():
        return None
    raw = raw.strip()
    for fmt in ("%d-%m-%Y", "%Y/%m/%d %H:%M:%S %z", "%Y-%m-%d"):
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).date()
    except ValueError:
        return None


def _dig(payload: Dict[str, Any], *path: str) -> Any:
    current: Any = payload
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


class CandidateSet(BaseModel):
    """Canonical shape of a set candidate, whatever catalog it came from."""

    artist_name: str = Field(..., alias="artistName", max_length=200)
    location_name: str = Field(..., alias="locationName", max_length=200)
    event_name: Optional[str] = Field(default=None, alias="eventName", max_length=200)
    event_date: Optional[date] = Field(default=None, alias="eventDate")
    source: Literal["manual", "setlistfm", "soundcloud", "youtube"] = "manual"
    external_id: Optional[str] = Field(default=None, alias="externalId")

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    @field_validator("artist_name", "location_name", mode="before")
    @classmethod
    def _validate_required_text(cls, value: Any, info) -> str:
        return _trimmed(value, info.field_name)

    @field_validator("event_name", mode="before")
    @classmethod
    def _validate_event_name(cls, value: Any) -> Optional[str]:
        return _trimmed(value, "event_name", required=False)

    @classmethod
    def from_provider(cls, provider: str, payload: Dict[str, Any]) -> "CandidateSet":
        """Map one provider payload onto ``CandidateSet``.

        Raises ``ValidationError`` for unknown providers or payloads missing
        the fields a set cannot do without.
        """

        if not isinstance(payload, dict):
            raise ValidationError("provider payload must be an object", code="invalid_candidate")

        if provider == "setlistfm":
            data = {
                "artistName": _dig(payload, "artist", "name"),
                "locationName": _dig(payload, "venue", "name")
                or _dig(payload, "venue", "city", "name"),
                "eventName": _dig(payload, "tour", "name") or _dig(payload, "festival", "name"),
                "eventDate": _parse_provider_date(payload.get("eventDate")),
                "externalId": payload.get("id"),
            }
        elif provider == "soundcloud":
            title = payload.get("title") or ""
            data = {
                "artistName": _dig(payload, "user", "username")
                or (title.split(" - ")[0] if title else None),
                "locationName": "SoundCloud",
                "eventName": title or None,
                "eventDate": _parse_provider_date(payload.get("created_at")),
                "externalId": str(payload["id"]) if payload.get("id") is not None else None,
            }
        elif provider == "youtube":
            data = {
                "artistName": _dig(payload, "snippet", "channelTitle"),
                "locationName": "YouTube",
                "eventName": _dig(payload, "snippet", "title"),
                "eventDate": _parse_provider_date(_dig(payload, "snippet", "publishedAt")),
                "externalId": _dig(payload, "id", "videoId") or payload.get("id"),
            }
        else:
            raise ValidationError(f"unknown provider '{provider}'", code="unknown_provider")

        if data["externalId"] is not None and not isinstance(data["externalId"], str):
            data["externalId"] = str(data["externalId"])
        try:
            return cls.model_validate({**data, "source": provider})
        except PydanticValidationError as exc:
            raise ValidationError(
                f"{provider} payload is not a usable set: {exc.errors()[0]['msg']}",
                code="invalid_candidate",
            ) from exc


class SetCreate(CandidateSet):
    bucket: Bucket
    notes: Optional[str] = Field(default=None, max_length=2000)


class SetImport(BaseModel):
    """A set logged straight from a catalog search result."""

    provider: str = Field(..., min_length=1)
    payload: Dict[str, Any]
    bucket: Bucket
    notes: Optional[str] = Field(default=None, max_length=2000)

    model_config = ConfigDict(extra="forbid")


class SetOut(BaseModel):
    id: str
    artist_name: str = Field(alias="artistName")
    location_name: str = Field(alias="locationName")
    event_name: Optional[str] = Field(default=None, alias="eventName")
    event_date: Optional[date] = Field(default=None, alias="eventDate")
    bucket: Bucket
    rating: float
    source: str = "manual"
    external_id: Optional[str] = Field(default=None, alias="externalId")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class RankedSetOut(SetOut):
    rank: int


class SetCountOut(BaseModel):
    count: int


class Pair(BaseModel):
    a: str
    b: str


class RankingOpenIn(BaseModel):
    set_id: str = Field(..., alias="setId", min_length=1)

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class RankingOpenOut(BaseModel):
    skip: bool
    first_pair: Optional[Pair] = Field(default=None, alias="firstPair")

    model_config = ConfigDict(populate_by_name=True)


class RankingDecideIn(BaseModel):
    winner_id: str = Field(..., alias="winnerId", min_length=1)
    idempotency_token: Optional[str] = Field(
        default=None, alias="idempotencyToken", max_length=200
    )

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class RankingDecideOut(BaseModel):
    done: bool
    next_pair: Optional[Pair] = Field(default=None, alias="nextPair")

    model_config = ConfigDict(populate_by_name=True)


class RankingCancelOut(BaseModel):
    closed: bool = True


class RankingListOut(BaseModel):
    bucket: Optional[Bucket] = None
    items: List[RankedSetOut]
