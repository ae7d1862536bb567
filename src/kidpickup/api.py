"""JSON friendly views of KidPickup data structures."""

from __future__ import annotations

import json
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional

from .models import (
    AttendanceLog,
    AuthorizedPickupEntry,
    ChatMessage,
    Child,
    CompletionConfirmation,
    PickupListing,
    PickupPersonOption,
    PickupRequest,
    UserAccount,
)


def _iso(value: Optional[date | datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class ApiExporter:
    """Convert KidPickup records to dictionaries for the web layer."""

    def pickup_request(self, request: PickupRequest) -> Dict[str, object]:
        mode = request.approval_mode
        return {
            "id": request.request_id,
            "child_id": request.child_id,
            "parent_id": request.parent_id,
            "pickup_person_id": request.pickup_person_id,
            "pickup_person_name": request.pickup_person_name,
            "status": request.status.value,
            "requested_at": _iso(request.requested_at),
            "estimated_arrival_time": _iso(request.estimated_arrival_time),
            "approved_at": _iso(request.approved_at),
            "approved_by": request.approved_by,
            "approval_mode": mode.value if mode else None,
            "completed_at": _iso(request.completed_at),
        }

    def listing(self, listing: PickupListing) -> Dict[str, object]:
        payload = self.pickup_request(listing.request)
        payload.update(
            {
                "child_name": listing.child_name,
                "parent_name": listing.parent_name,
                "child_photo_url": listing.child_photo_url,
            }
        )
        return payload

    def listings(self, listings: Iterable[PickupListing]) -> List[Dict[str, object]]:
        return [self.listing(item) for item in listings]

    def confirmation(self, confirmation: CompletionConfirmation) -> Dict[str, object]:
        return {
            "request_id": confirmation.request_id,
            "child_name": confirmation.child_name,
            "child_photo_url": confirmation.child_photo_url,
            "pickup_person_name": confirmation.pickup_person_name,
            "parent_name": confirmation.parent_name,
            "captured_at": _iso(confirmation.captured_at),
        }

    def child(self, child: Child) -> Dict[str, object]:
        return {
            "id": child.child_id,
            "name": child.name,
            "photo_url": child.photo_url,
            "birth_date": _iso(child.birth_date),
            "notes": child.notes,
        }

    def option(self, option: PickupPersonOption) -> Dict[str, object]:
        return {"id": option.option_id, "name": option.name, "relationship": option.relationship, "is_parent": option.is_parent}

    def authorized_pickup(self, entry: AuthorizedPickupEntry) -> Dict[str, object]:
        return {
            "id": entry.entry_id,
            "child_id": entry.child_id,
            "name": entry.name,
            "relationship": entry.relationship,
            "phone": entry.phone,
            "consent_given": entry.consent_given,
            "consent_date": _iso(entry.consent_date),
        }

    def attendance(self, log: AttendanceLog) -> Dict[str, object]:
        return {
            "id": log.log_id,
            "child_id": log.child_id,
            "checked_in_at": _iso(log.checked_in_at),
            "checked_in_by": log.checked_in_by,
            "checked_out_at": _iso(log.checked_out_at),
            "checked_out_by": log.checked_out_by,
            "present": log.is_present,
        }

    def message(self, message: ChatMessage) -> Dict[str, object]:
        return {
            "id": message.message_id,
            "child_id": message.child_id,
            "sender_id": message.sender_id,
            "sender_role": message.sender_role.value,
            "message": message.message,
            "created_at": _iso(message.created_at),
        }

    def user(self, account: UserAccount) -> Dict[str, object]:
        return {
            "id": account.user_id,
            "email": account.email,
            "full_name": account.full_name,
            "roles": sorted(role.value for role in account.roles),
        }

    def to_json(self, payload: object) -> str:
        return json.dumps(payload, sort_keys=True, default=str)


__all__ = ["ApiExporter"]
