from pydantic import BaseModel


class RecorderReport(BaseModel):
    # No defaults: a report missing busy or healthy is rejected with a 422.
    recorder_id: str
    busy: bool
    healthy: bool
