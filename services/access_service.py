"""
Access Service
Family-access capability lookup and authorization of acting subjects
"""

import logging
from enum import Enum
from typing import List, Optional

from sqlalchemy.orm import Session

from exceptions import AuthorizationError
from models import FamilyAccess, FamilyAccessStatus


logger = logging.getLogger(__name__)


class Permission(str, Enum):
    VIEW = "view"
    EDIT = "edit"
    RECEIVE_NOTIFICATIONS = "receive_notifications"


_PERMISSION_FLAGS = {
    Permission.VIEW: "can_view_medications",
    Permission.EDIT: "can_edit_medications",
    Permission.RECEIVE_NOTIFICATIONS: "can_receive_notifications",
}


def has_permission(access: Optional[FamilyAccess], permission: Permission) -> bool:
    if access is None or access.status != FamilyAccessStatus.ACTIVE:
        return False
    return bool(getattr(access, _PERMISSION_FLAGS[Permission(permission)]))


class AccessService:
    """
    Answers "may this subject act on this patient's data?"
    """

    def get_access(self, db: Session, patient_id: str, member_id: str) -> Optional[FamilyAccess]:
        return db.query(FamilyAccess).filter(
            FamilyAccess.patient_id == patient_id,
            FamilyAccess.family_member_id == member_id,
        ).first()

    def list_members(self, db: Session, patient_id: str, active_only: bool = True) -> List[FamilyAccess]:
        query = db.query(FamilyAccess).filter(FamilyAccess.patient_id == patient_id)
        if active_only:
            query = query.filter(FamilyAccess.status == FamilyAccessStatus.ACTIVE)
        return query.order_by(FamilyAccess.id).all()

    async def authorize(self, db: Session, subject_id: str, patient_id: str, permission: Permission) -> str:
        """
        Returns "self" or "family".

        Raises:
            AuthorizationError: no active link or the permission is missing
        """
        if subject_id == patient_id:
            return "self"

        access = self.get_access(db, patient_id, subject_id)
        if access is None or access.status != FamilyAccessStatus.ACTIVE:
            logger.warning(f"Subject {subject_id} has no active access to patient {patient_id}")
            raise AuthorizationError(f"No active family access to patient {patient_id}")

        if not has_permission(access, permission):
            logger.warning(f"Subject {subject_id} lacks {permission.value} permission for patient {patient_id}")
            raise AuthorizationError(f"Missing '{permission.value}' permission for patient {patient_id}")

        return "family"
