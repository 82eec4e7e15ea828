import logging
import math
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId

from chatcore.core.config import Settings, get_settings
from chatcore.core.errors import ChatError, Conflict, Forbidden, InvalidPayload, NotFound, Unavailable
from chatcore.core.time import ensure_aware, isoformat, utcnow
from chatcore.models.message import MARKETPLACE_TYPES, MessageType
from chatcore.models.user import UserIdentity
from chatcore.repositories.conversation_repository import ConversationRepository
from chatcore.repositories.message_repository import MessageRepository
from chatcore.repositories.user_repository import to_object_id
from chatcore.services.collaborators import CheckIns, IdentityProvider, Marketplace
from chatcore.services.presence_service import PresenceChannel


logger = logging.getLogger(__name__)


def unknown_identity(user_id: str) -> UserIdentity:
    return {"_id": user_id, "display_name": "Unknown user", "avatar": None}


def serialize_message(doc: Dict[str, Any], identities: Optional[Dict[str, UserIdentity]] = None) -> Dict[str, Any]:
    identities = identities or {}
    sender_id = doc.get("sender_id")
    receiver_id = doc.get("receiver_id")
    return {
        "_id": str(doc["_id"]),
        "conversation_id": str(doc["conversation_id"]),
        "sender_id": sender_id,
        "receiver_id": receiver_id,
        "sender": identities.get(sender_id) or unknown_identity(sender_id),
        "receiver": identities.get(receiver_id) or unknown_identity(receiver_id),
        "content": doc.get("content", ""),
        "type": doc.get("type", MessageType.TEXT.value),
        "attachments": list(doc.get("attachments") or []),
        "image_url": doc.get("image_url"),
        "location": doc.get("location"),
        "marketplace_item": doc.get("marketplace_item"),
        "check_in": doc.get("check_in"),
        "is_read": bool(doc.get("is_read")),
        "read_at": isoformat(doc.get("read_at")),
        "is_deleted": bool(doc.get("is_deleted")),
        "deleted_at": isoformat(doc.get("deleted_at")),
        "is_edited": bool(doc.get("is_edited")),
        "edited_at": isoformat(doc.get("edited_at")),
        "client_message_id": doc.get("client_message_id"),
        "created_at": isoformat(doc.get("created_at")),
        "updated_at": isoformat(doc.get("updated_at")),
    }


def visible_to(message: Optional[Dict[str, Any]], user_id: str) -> bool:
    return bool(message) and not message.get("is_deleted") and user_id not in (message.get("deleted_by") or [])


def other_member(conversation: Dict[str, Any], user_id: str) -> str:
    for member in conversation["participants"]:
        if member != user_id:
            return member
    raise Conflict("Conversation does not have two distinct members")


def pagination(page: int, limit: int, total: int) -> Dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": math.ceil(total / limit) if limit else 0,
    }


def check_in_snapshot(check_in: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "_id": str(check_in["_id"]),
        "location": check_in.get("location"),
        "note": check_in.get("note") or "",
        "expires_at": isoformat(ensure_aware(check_in.get("expires_at"))),
    }


def validate_coordinates(coordinates: Any) -> List[float]:
    """Return ``[longitude, latitude]`` or raise InvalidPayload."""
    if not isinstance(coordinates, (list, tuple)) or len(coordinates) != 2:
        raise InvalidPayload("Coordinates must be [longitude, latitude]")
    for value in coordinates:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise InvalidPayload("Coordinates must be numbers")
    lng, lat = float(coordinates[0]), float(coordinates[1])
    if not -180 <= lng <= 180:
        raise InvalidPayload("Longitude must be between -180 and 180")
    if not -90 <= lat <= 90:
        raise InvalidPayload("Latitude must be between -90 and 90")
    return [lng, lat]


class ChatService:

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        identity: IdentityProvider,
        marketplace: Marketplace,
        check_ins: CheckIns,
        presence: Optional[PresenceChannel] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._identity = identity
        self._marketplace = marketplace
        self._check_ins = check_ins
        self._presence = presence
        self._settings = settings or get_settings()

    # conversations

    async def get_or_create_conversation(self, current_user_id: str, other_user_id: str) -> Tuple[Dict[str, Any], bool]:
        if not current_user_id or not other_user_id:
            raise Conflict("A conversation needs exactly two members")
        if current_user_id == other_user_id:
            raise Conflict("Cannot start a conversation with yourself")
        other = await self._collaborator("identity", self._identity.resolve_user(other_user_id))
        if other is None:
            raise NotFound("User not found")
        convo, created = await self._conversation_repo.get_or_create_one_to_one(current_user_id, other_user_id)
        if created:
            logger.info("Created conversation %s for %s and %s", convo["_id"], current_user_id, other_user_id)
        summary = await self._summarize(convo, current_user_id, {other_user_id: other})
        return summary, created

    async def get_conversation(self, user_id: str, conversation_id: str) -> Dict[str, Any]:
        convo = await self.require_member(conversation_id, user_id)
        return await self._summarize(convo, user_id)

    async def list_conversations(
        self,
        user_id: str,
        archived: bool = False,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        page, limit = self._page_params(page, limit)
        items, total = await self._conversation_repo.list_for_user(user_id, archived=archived, page=page, limit=limit)
        identities = await self._resolve_users([m for c in items for m in c["participants"]])
        last_ids = [c["last_message"] for c in items if c.get("last_message")]
        last_messages = await self._message_repo.get_many(last_ids)
        summaries = [self._summary(c, user_id, identities, last_messages.get(c.get("last_message"))) for c in items]
        return {"items": summaries, "pagination": pagination(page, limit, total)}

    async def toggle_archive(self, user_id: str, conversation_id: str) -> str:
        convo = await self.require_member(conversation_id, user_id)
        archive = user_id not in (convo.get("archived_by") or [])
        await self._conversation_repo.set_archived(convo["_id"], user_id, archive)
        return "archived" if archive else "unarchived"

    async def delete_conversation(self, user_id: str, conversation_id: str) -> Dict[str, Any]:
        convo = await self.require_member(conversation_id, user_id)
        cutoff = utcnow()
        counted = 0
        if self._settings.adjust_unread_on_delete:
            counted = await self._message_repo.count_unread_for_receiver(user_id, convo["_id"], until=cutoff)
        hidden = await self._message_repo.add_deleted_by_for_conversation(convo["_id"], user_id, until=cutoff)
        purged = await self._message_repo.mark_deleted_for_everyone(convo["_id"], convo["participants"])
        if counted:
            await self._conversation_repo.decrement_unread(convo["_id"], user_id, amount=counted)
        await self._refresh_last_message(convo["_id"])
        logger.info("User %s cleared conversation %s (%d hidden, %d deleted)", user_id, convo["_id"], hidden, purged)
        return {"conversation_id": str(convo["_id"]), "hidden": hidden, "deleted_for_everyone": purged}

    async def reconcile_conversation(self, conversation_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Recompute every member's unread counter and the last-message pointer
        from the message store and write them back.
        """
        if user_id is not None:
            convo = await self.require_member(conversation_id, user_id)
        else:
            convo = await self._get_conversation(conversation_id)
        cid = convo["_id"]
        unread = {m: await self._message_repo.count_unread_for_receiver(m, cid) for m in convo["participants"]}
        latest = await self._message_repo.get_latest_visible(cid)
        stored = convo.get("unread_count") or {}
        if any(stored.get(m, 0) != n for m, n in unread.items()):
            logger.warning("Unread counters drifted on %s: stored=%s actual=%s", cid, stored, unread)
        await self._conversation_repo.overwrite_counters(
            cid,
            unread,
            latest["_id"] if latest else None,
            latest["created_at"] if latest else None,
        )
        return {
            "conversation_id": str(cid),
            "unread_count": unread,
            "last_message": str(latest["_id"]) if latest else None,
        }

    # messages

    async def send_message(
        self,
        sender_id: str,
        receiver_id: Optional[str] = None,
        content: Optional[str] = None,
        message_type: str = MessageType.TEXT.value,
        conversation_id: Optional[str] = None,
        attachments: Optional[List[str]] = None,
        image_url: Optional[str] = None,
        coordinates: Optional[List[float]] = None,
        location: Optional[Dict[str, Any]] = None,
        marketplace_item_id: Optional[str] = None,
        check_in_id: Optional[str] = None,
        client_message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if message_type not in MessageType.values():
            raise InvalidPayload(
                f"Unknown message type {message_type!r}",
                details={"allowed": MessageType.values()},
            )
        mtype = MessageType(message_type)
        content = (content or "").strip()
        attachments = [a for a in (attachments or []) if a]
        doc: Dict[str, Any] = {
            "content": content,
            "type": mtype.value,
            "attachments": attachments,
            "image_url": image_url,
            "location": None,
            "marketplace_item": None,
            "check_in": None,
            "client_message_id": client_message_id,
        }
        raw_coordinates = coordinates if coordinates is not None else (location or {}).get("coordinates")
        new_check_in: Optional[List[float]] = None

        if mtype == MessageType.TEXT:
            if not content and not attachments:
                raise InvalidPayload("Message content cannot be empty")
        elif mtype == MessageType.IMAGE:
            if not image_url and not attachments:
                raise InvalidPayload("Image messages need image_url or attachments")
        elif mtype == MessageType.LOCATION:
            point = validate_coordinates(raw_coordinates)
            doc["location"] = {"type": "Point", "coordinates": point, "name": (location or {}).get("name")}
        elif mtype in MARKETPLACE_TYPES:
            doc["marketplace_item"] = await self._marketplace_snapshot(marketplace_item_id)
        elif mtype == MessageType.CHECKIN:
            if check_in_id:
                doc["check_in"] = await self._owned_check_in(check_in_id, sender_id)
            elif raw_coordinates is not None:
                new_check_in = validate_coordinates(raw_coordinates)
            else:
                raise InvalidPayload("Check-in messages need check_in_id or coordinates")

        if conversation_id:
            convo = await self.require_member(conversation_id, sender_id)
            other = other_member(convo, sender_id)
            if receiver_id and receiver_id != other:
                raise InvalidPayload("receiver_id is not the other member of this conversation")
            receiver_id = other
        else:
            if not receiver_id:
                raise InvalidPayload("receiver_id or conversation_id is required")
            if receiver_id == sender_id:
                raise Conflict("Cannot start a conversation with yourself")
            convo = None
        identities = await self._resolve_users([sender_id, receiver_id])
        if receiver_id not in identities:
            raise NotFound("Receiver not found")

        if new_check_in is not None:
            created_id = await self._collaborator(
                "check-in", self._check_ins.create_check_in(sender_id, new_check_in)
            )
            created = await self._collaborator("check-in", self._check_ins.get_check_in(created_id))
            if created is None:
                raise Unavailable(f"Check-in {created_id} could not be read back")
            doc["check_in"] = check_in_snapshot(created)
        if convo is None:
            convo, _ = await self._conversation_repo.get_or_create_one_to_one(sender_id, receiver_id)

        doc.update({"conversation_id": convo["_id"], "sender_id": sender_id, "receiver_id": receiver_id})
        saved = await self._message_repo.save_message(doc)
        updated = await self._conversation_repo.update_on_new_message(
            convo["_id"], saved["_id"], saved["created_at"], sender_id, receiver_id
        )
        message = serialize_message(saved, identities)
        cid = str(convo["_id"])

        if self._presence is not None:
            await self._safe(self._presence.stop_typing(cid, sender_id, receiver_id, only_if_typing=True))
        await self._publish(
            "message_received",
            message,
            users=[sender_id, receiver_id],
            rooms=[PresenceChannel.room_for(cid)],
        )
        counters = (updated or convo).get("unread_count") or {}
        for member in (sender_id, receiver_id):
            await self._publish(
                "conversation_updated",
                {
                    "conversation_id": cid,
                    "unread_count": counters.get(member, 0),
                    "last_message": message,
                    "updated_at": message["created_at"],
                },
                users=[member],
            )
        return message

    async def get_messages(
        self,
        user_id: str,
        conversation_id: str,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        convo = await self.require_member(conversation_id, user_id)
        page, limit = self._page_params(page, limit)
        items, total = await self._message_repo.get_messages_by_conversation(convo["_id"], user_id, page=page, limit=limit)
        identities = await self._resolve_users(convo["participants"])
        return {
            "items": [serialize_message(m, identities) for m in items],
            "pagination": pagination(page, limit, total),
        }

    async def mark_conversation_read(self, user_id: str, conversation_id: str) -> int:
        convo = await self.require_member(conversation_id, user_id)
        cid = convo["_id"]
        unread_ids = await self._message_repo.get_unread_ids(cid, user_id)
        read_at = utcnow()
        # subtract only what this call flipped, never $set 0
        visible = await self._message_repo.mark_read(unread_ids, read_at, visible_to=user_id)
        hidden = await self._message_repo.mark_read(unread_ids, read_at)
        modified = visible + hidden
        # hidden messages were already counted off when adjust_unread_on_delete is on
        counted = visible if self._settings.adjust_unread_on_delete else modified
        if counted:
            await self._conversation_repo.decrement_unread(cid, user_id, amount=counted)
        if modified:
            refreshed = await self._conversation_repo.get_by_id(cid) or convo
            await self._publish(
                "message_read",
                {
                    "conversation_id": str(cid),
                    "message_ids": [str(i) for i in unread_ids],
                    "reader_id": user_id,
                    "read_at": isoformat(read_at),
                },
                users=[other_member(convo, user_id)],
            )
            await self._publish(
                "conversation_updated",
                {"conversation_id": str(cid), "unread_count": (refreshed.get("unread_count") or {}).get(user_id, 0)},
                users=[user_id],
            )
        return modified

    async def mark_message_read(self, user_id: str, message_id: str) -> Dict[str, Any]:
        msg = await self._get_message(message_id)
        if msg.get("receiver_id") != user_id:
            raise Forbidden("Only the receiver can mark a message as read")
        updated = await self._message_repo.mark_message_read(msg["_id"], user_id)
        if updated is not None:
            # already counted off when the receiver hid it
            hidden = user_id in (updated.get("deleted_by") or [])
            if not (self._settings.adjust_unread_on_delete and hidden):
                await self._conversation_repo.decrement_unread(updated["conversation_id"], user_id)
            await self._publish(
                "message_read",
                {
                    "conversation_id": str(updated["conversation_id"]),
                    "message_ids": [str(updated["_id"])],
                    "reader_id": user_id,
                    "read_at": isoformat(updated.get("read_at")),
                },
                users=[updated["sender_id"]],
            )
            msg = updated
        identities = await self._resolve_users([msg["sender_id"], msg["receiver_id"]])
        return serialize_message(msg, identities)

    async def edit_message(self, user_id: str, message_id: str, content: Optional[str]) -> Dict[str, Any]:
        content = (content or "").strip()
        if not content:
            raise InvalidPayload("Message content cannot be empty")
        msg = await self._get_message(message_id)
        if msg.get("sender_id") != user_id:
            raise Forbidden("Only the sender can edit a message")
        if msg.get("type", MessageType.TEXT.value) != MessageType.TEXT.value:
            raise InvalidPayload("Only text messages can be edited")
        if msg.get("is_deleted"):
            raise Conflict("Message has been deleted")
        updated = await self._message_repo.edit_content(msg["_id"], user_id, content)
        if updated is None:
            raise Conflict("Message has been deleted")
        identities = await self._resolve_users([updated["sender_id"], updated["receiver_id"]])
        message = serialize_message(updated, identities)
        cid = message["conversation_id"]
        await self._publish(
            "message_edited",
            message,
            users=[updated["sender_id"], updated["receiver_id"]],
            rooms=[PresenceChannel.room_for(cid)],
        )
        return message

    async def delete_message(self, user_id: str, message_id: str) -> Dict[str, Any]:
        msg = await self._get_message(message_id)
        if user_id not in (msg.get("sender_id"), msg.get("receiver_id")):
            raise Forbidden("Only the sender or receiver can delete a message")
        cid = msg["conversation_id"]
        result = {"message_id": str(msg["_id"]), "conversation_id": str(cid), "is_deleted": bool(msg.get("is_deleted"))}
        if user_id in (msg.get("deleted_by") or []):
            return result

        await self._message_repo.add_deleted_by(msg["_id"], user_id)
        if (
            self._settings.adjust_unread_on_delete
            and user_id == msg.get("receiver_id")
            and not msg.get("is_read")
        ):
            await self._conversation_repo.decrement_unread(cid, user_id)

        convo = await self._get_conversation(str(cid))
        await self._message_repo.mark_deleted_for_everyone(cid, convo["participants"])
        current = await self._message_repo.get_by_id(msg["_id"])
        result["is_deleted"] = bool(current and current.get("is_deleted"))
        if result["is_deleted"] and convo.get("last_message") == msg["_id"]:
            await self._refresh_last_message(cid)

        await self._publish(
            "message_deleted",
            {**result, "deleted_by": user_id},
            users=convo["participants"],
        )
        return result

    async def get_unread_total(self, user_id: str) -> int:
        return await self._message_repo.count_unread_for_receiver(user_id)

    # helpers

    async def require_member(self, conversation_id: str, user_id: str) -> Dict[str, Any]:
        convo = await self._get_conversation(conversation_id)
        if user_id not in convo.get("participants", []):
            raise Forbidden("You are not a member of this conversation")
        return convo

    async def _get_conversation(self, conversation_id: str) -> Dict[str, Any]:
        oid = conversation_id if isinstance(conversation_id, ObjectId) else to_object_id(conversation_id)
        convo = await self._conversation_repo.get_by_id(oid) if oid is not None else None
        if convo is None:
            raise NotFound("Conversation not found")
        return convo

    async def _get_message(self, message_id: str) -> Dict[str, Any]:
        oid = to_object_id(message_id)
        msg = await self._message_repo.get_by_id(oid) if oid is not None else None
        if msg is None:
            raise NotFound("Message not found")
        return msg

    async def _refresh_last_message(self, conversation_id: ObjectId) -> None:
        latest = await self._message_repo.get_latest_visible(conversation_id)
        await self._conversation_repo.set_last_message(
            conversation_id,
            latest["_id"] if latest else None,
            latest["created_at"] if latest else None,
        )

    async def _summarize(
        self,
        convo: Dict[str, Any],
        user_id: str,
        identities: Optional[Dict[str, UserIdentity]] = None,
    ) -> Dict[str, Any]:
        identities = dict(identities or {})
        missing = [m for m in convo["participants"] if m not in identities]
        if missing:
            identities.update(await self._resolve_users(missing))
        last = None
        if convo.get("last_message"):
            last = await self._message_repo.get_by_id(convo["last_message"])
        return self._summary(convo, user_id, identities, last)

    def _summary(
        self,
        convo: Dict[str, Any],
        user_id: str,
        identities: Dict[str, UserIdentity],
        last_message: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        other = other_member(convo, user_id)
        return {
            "_id": str(convo["_id"]),
            "participants": list(convo["participants"]),
            "other_user": identities.get(other) or unknown_identity(other),
            "unread_count": (convo.get("unread_count") or {}).get(user_id, 0),
            "is_archived": user_id in (convo.get("archived_by") or []),
            "last_message": serialize_message(last_message, identities) if visible_to(last_message, user_id) else None,
            "last_message_at": isoformat(convo.get("last_message_at")),
            "created_at": isoformat(convo.get("created_at")),
            "updated_at": isoformat(convo.get("updated_at")),
        }

    async def _marketplace_snapshot(self, listing_id: Optional[str]) -> Dict[str, Any]:
        if not listing_id:
            raise InvalidPayload("marketplace_item_id is required for marketplace messages")
        summary = await self._collaborator("marketplace", self._marketplace.get_listing_summary(listing_id))
        if summary is None:
            raise NotFound("Marketplace item not found")
        if not summary.get("is_active"):
            raise InvalidPayload("Marketplace item is no longer available")
        return {
            "_id": str(summary["_id"]),
            "title": summary.get("title"),
            "price": summary.get("price"),
            "owner_id": summary.get("owner_id"),
        }

    async def _owned_check_in(self, check_in_id: str, sender_id: str) -> Dict[str, Any]:
        check_in = await self._collaborator("check-in", self._check_ins.get_check_in(check_in_id))
        if check_in is None:
            raise NotFound("Check-in not found")
        if str(check_in.get("user_id")) != sender_id:
            raise Forbidden("Check-in belongs to another user")
        expires_at = ensure_aware(check_in.get("expires_at"))
        if expires_at is not None and expires_at <= utcnow():
            raise InvalidPayload("Check-in has expired")
        return check_in_snapshot(check_in)

    async def _resolve_users(self, user_ids: Iterable[str]) -> Dict[str, UserIdentity]:
        ids = [u for u in dict.fromkeys(user_ids) if u]
        if not ids:
            return {}
        return await self._collaborator("identity", self._identity.resolve_users(ids))

    async def _collaborator(self, name: str, awaitable):
        try:
            return await awaitable
        except ChatError:
            raise
        except Exception as exc:
            logger.warning("%s collaborator failed: %s", name, exc)
            raise Unavailable(f"The {name} service is unavailable") from exc

    async def _publish(self, event: str, data: Dict[str, Any], **audience) -> None:
        if self._presence is None:
            return
        await self._safe(self._presence.publish(event, data, **audience))

    async def _safe(self, awaitable) -> None:
        # delivery is best effort and never fails the request
        try:
            await awaitable
        except Exception:
            logger.exception("Live delivery failed")

    def _page_params(self, page: Optional[int], limit: Optional[int]) -> Tuple[int, int]:
        page = max(1, page or 1)
        limit = limit or self._settings.default_page_limit
        return page, max(1, min(limit, self._settings.max_page_limit))
