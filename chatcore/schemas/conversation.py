from pydantic import Field

from chatcore.schemas.base import RequestModel


class ConversationCreate(RequestModel):

    participant_id: str = Field(min_length=1)
