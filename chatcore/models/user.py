from typing import Optional, TypedDict


class UserDocument(TypedDict, total=False):

    _id: str
    email: str
    username: str
    display_name: Optional[str]
    full_name: Optional[str]
    avatar: Optional[str]


class UserIdentity(TypedDict):
    """Display projection handed out by the identity provider."""

    _id: str
    display_name: str
    avatar: Optional[str]
