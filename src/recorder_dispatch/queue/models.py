from typing import Dict, NamedTuple, Optional

from pydantic import BaseModel


class RecorderRequest(BaseModel):
    request_id: str
    conference: str
    room_param: str = ""
    external_api_url: str
    participant: str = ""
    event_type: Optional[str] = None


class RequestMeta(RecorderRequest):
    """A queued request as stored in its metadata hash. `created` is epoch seconds."""
    created: float

    def to_hash(self) -> Dict[str, str]:
        return {k: str(v) for k, v in self.model_dump().items() if v is not None}

    @classmethod
    def from_hash(cls, fields: Dict[str, str]) -> "RequestMeta":
        return cls.model_validate(fields)


class QueuePosition(NamedTuple):
    meta: RequestMeta
    position: int
    wait_seconds: int
