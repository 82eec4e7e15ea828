from datetime import datetime
from typing import Optional, TypedDict


class CheckInDocument(TypedDict, total=False):
    _id: str
    user_id: str
    location: dict  # GeoJSON point
    note: Optional[str]
    created_at: datetime
    expires_at: Optional[datetime]
