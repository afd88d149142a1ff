"""
Example row transforms.

Each transform maps one source document to one destination row, or to None
when the document has no place in the table.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from mirrorsync.transforms import (
    created_at, ms_to_datetime, object_id_str, register_transform, safe_map_lookup,
)

CREDIT_TYPES = {
    0: "Manual adjustment",
    1: "Credit usage",
    2: "Credit purchase",
    3: "Refund",
    4: "Refund",
    5: "Refund",
    6: "Refund",
    7: "Refund",
    8: "Booking requirement adjustment",
    9: "Free / promotional credits",
    10: "Expiring credits",
    11: "Credit transfer",
    12: "Non-booking usage",
}

REFUND_TYPES = {
    3: "No-show",
    4: "Unfulfilled",
    5: "Booking cancelled / rejected",
    6: "Bad participant",
    7: "Other",
}

USAGE_CREDIT_TYPES = {0, 1, 3, 4, 5, 6, 7, 8, 12}

# Amounts before this date were stored in dollars, later ones in cents
CENTS_CUTOVER = datetime(2019, 7, 31, 14, 0, tzinfo=timezone.utc)


def _user_type(user_type: Optional[Dict[str, Any]]) -> Optional[str]:
    user_type = user_type or {}
    if user_type.get('participant'):
        return "Participant"
    if user_type.get('researcher'):
        return "Researcher"
    if user_type.get('client'):
        return "Client"
    return None


@register_transform("users")
def transform_user(doc: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    user_type = _user_type(doc.get('type'))
    if user_type is None:
        return None

    created = created_at(doc)
    identity = (doc.get('meta') or {}).get('identity')
    name = None
    if identity:
        name = f"{identity.get('firstname') or ''} {identity.get('lastname') or ''}".strip()
    is_participant = user_type == "Participant"

    return {
        'ID': object_id_str(doc.get('_id')),
        'Created': created,
        'Updated': ms_to_datetime(doc.get('updated')) or created,
        'Type': user_type,
        'Name': name,
        'Country': (doc.get('location') or {}).get('country'),
        'Participant_Blacklist': bool(doc.get('blacklist')) if is_participant else None,
    }


def _credit_amount(doc: Dict[str, Any], created: Optional[datetime]) -> Optional[float]:
    amount = doc.get('amount')
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        return None
    if doc.get('accounting_type') == 2:
        amount = -amount
    if created is not None and created < CENTS_CUTOVER:
        return amount * 100
    return amount


@register_transform("credit_activity")
def transform_credit_activity(doc: Dict[str, Any]) -> Dict[str, Any]:
    created = created_at(doc)
    return {
        'ID': object_id_str(doc.get('_id')),
        'Created': created,
        'Updated': ms_to_datetime(doc.get('updated')) or created,
        'Team_ID': object_id_str(doc.get('_team_id')),
        'User_ID': object_id_str(doc.get('_user_id')),
        'Admin_User_ID': object_id_str(doc.get('_admin_user_id')),
        'Study_ID': object_id_str(doc.get('_booking_id')),
        'Project_ID': object_id_str(doc.get('_project_id')),
        'Transaction_ID': object_id_str(doc.get('_transaction_id')),
        'Transfer_From_Team_ID': object_id_str(doc.get('_from_team_id')),
        'Transfer_To_Team_ID': object_id_str(doc.get('_to_team_id')),
        'Credit_Amount': _credit_amount(doc, created),
        'Type': safe_map_lookup(CREDIT_TYPES, doc.get('type')),
        'Credit_Refund_Type': safe_map_lookup(REFUND_TYPES, doc.get('refund_type')),
        'Usage': doc.get('type') in USAGE_CREDIT_TYPES,
        'Legacy': bool(doc.get('_legacy_id')),
        'Comment': doc.get('comment'),
    }
