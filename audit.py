"""Who changed what: an append-only log of back-office actions."""
import logging
from typing import Optional

from database import AUDIT_LOGS, serialize, utcnow

logger = logging.getLogger(__name__)


def log_action(db, actor: Optional[dict], action: str, target_type: str, target_id, details: Optional[dict] = None):
    entry = {
        "action": action,
        "targetType": target_type,
        "targetId": str(target_id) if target_id is not None else None,
        "actorId": str(actor["_id"]) if actor else None,
        "actorUsername": actor.get("username") if actor else None,
        "actorRole": actor.get("role") if actor else None,
        "details": details or {},
        "created_at": utcnow(),
    }
    db[AUDIT_LOGS].insert_one(entry)
    logger.debug("audit %s %s/%s by %s", action, target_type, entry["targetId"], entry["actorUsername"])


def list_actions(db, action=None, target_id=None, limit: int = 100):
    q = {}
    if action:
        q["action"] = action
    if target_id:
        q["targetId"] = target_id
    return [serialize(e) for e in db[AUDIT_LOGS].find(q).sort([("created_at", -1), ("_id", -1)]).limit(limit)]
