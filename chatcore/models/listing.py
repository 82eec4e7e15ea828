from typing import Optional, TypedDict


class ListingSummary(TypedDict, total=False):
    _id: str
    title: str
    price: Optional[float]
    is_active: bool
    owner_id: Optional[str]
