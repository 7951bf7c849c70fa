from typing import Optional
from sqlalchemy.orm import Session
from carehub.database.models import AuditLog


def log_action(db: Session, user_id: Optional[int], action: str, entity_type: str, entity_id, details: dict):
    """Create audit log entry"""
    audit = AuditLog(
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        details=details
    )
    db.add(audit)
    db.commit()
