from typing import Optional

from pydantic import Field

from chatcore.schemas.base import RequestModel


class StatusUpdate(RequestModel):

    status: str = Field(min_length=1, max_length=32)
    custom_message: Optional[str] = Field(default=None, max_length=140)
