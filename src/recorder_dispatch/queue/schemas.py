from pydantic import BaseModel


class CancelRequest(BaseModel):
    request_id: str


class QueueEntry(BaseModel):
    request_id: str
    position: int
    wait_seconds: int
