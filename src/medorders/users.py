"""User accounts and role profiles."""

import logging
from typing import Any

from .errors import MedordersError, PermissionDeniedError, ProfileNotFoundError, UserNotFoundError
from .models import (
    DeliveryProfile,
    LaboratoryProfile,
    Role,
    StepResult,
    StepStatus,
    User,
    _generate_id,
)
from .store import Database

logger = logging.getLogger(__name__)


class UserStore:
    """Users plus the laboratory and delivery-partner profiles hanging off them."""

    def __init__(self, db: Database):
        self.db = db

    def create_user(
        self,
        name: str,
        role: Role,
        email: str | None = None,
        phone: str | None = None,
    ) -> User:
        user = User.create(name=name, role=role, email=email, phone=phone)
        with self.db.transaction() as data:
            data["users"][user.id] = user.to_dict()
        logger.info("Created %s user %s", role.value, user.id)
        return user

    def get_user(self, user_id: str) -> User:
        """
        Get a user by ID.

        Raises:
            UserNotFoundError: If the user doesn't exist.
        """
        doc = self.db.collection("users").get(user_id)
        if doc is None:
            raise UserNotFoundError(user_id)
        return User.from_dict(doc)

    def find_user(self, user_id: str) -> User | None:
        doc = self.db.collection("users").get(user_id)
        return User.from_dict(doc) if doc else None

    def list_users(self, role: Role | None = None) -> list[User]:
        users = [User.from_dict(d) for d in self.db.collection("users").values()]
        if role is not None:
            users = [u for u in users if u.role == role]
        return users

    def require_role(self, user_id: str, role: Role) -> User:
        """Fetch a user and check its role."""
        user = self.get_user(user_id)
        if user.role != role:
            raise PermissionDeniedError(f"user {user_id} is not a {role.value}")
        return user

    # --- Laboratory profiles ---

    def create_lab_profile(
        self,
        user_id: str,
        name: str,
        address: str | None = None,
        city: str | None = None,
    ) -> LaboratoryProfile:
        self.require_role(user_id, Role.LABORATORY)
        profile = LaboratoryProfile(
            id=_generate_id(), user_id=user_id, name=name, address=address, city=city
        )
        with self.db.transaction() as data:
            data["lab_profiles"][profile.id] = profile.to_dict()
        return profile

    def resolve_lab_user_id(self, lab_ref: str) -> str:
        """
        Map a laboratory user id or laboratory profile id to the lab's user id.

        Raises:
            ProfileNotFoundError: If neither a lab user nor a lab profile matches.
        """
        data = self.db.snapshot()
        user = data["users"].get(lab_ref)
        if user is not None and user["role"] == Role.LABORATORY.value:
            return lab_ref
        profile = data["lab_profiles"].get(lab_ref)
        if profile is not None:
            return profile["user_id"]
        raise ProfileNotFoundError("laboratory", lab_ref)

    # --- Delivery profiles ---

    @staticmethod
    def _delivery_profile_doc(data: dict[str, Any], user_id: str) -> dict[str, Any] | None:
        for doc in data["delivery_profiles"].values():
            if doc["user_id"] == user_id:
                return doc
        return None

    def get_or_create_delivery_profile(self, user_id: str) -> DeliveryProfile:
        """Return the partner's profile, creating an empty placeholder on first lookup."""
        with self.db.transaction() as data:
            doc = self._delivery_profile_doc(data, user_id)
            created = doc is None
            if created:
                doc = DeliveryProfile.placeholder(user_id).to_dict()
                data["delivery_profiles"][doc["id"]] = doc
        if created:
            logger.info("Created placeholder delivery profile for %s", user_id)
        return DeliveryProfile.from_dict(doc)

    def update_delivery_profile(self, user_id: str, **fields: Any) -> DeliveryProfile:
        """Set a partner's address fields, creating the profile if needed."""
        with self.db.transaction() as data:
            doc = self._delivery_profile_doc(data, user_id)
            if doc is None:
                doc = DeliveryProfile.placeholder(user_id).to_dict()
                data["delivery_profiles"][doc["id"]] = doc
            for key in ("address", "pin_code", "city"):
                if key in fields:
                    doc[key] = fields[key]
        logger.info("Updated delivery profile for %s", user_id)
        return DeliveryProfile.from_dict(doc)

    def resolve_partner_address(self, user_id: str) -> tuple[dict[str, Any] | None, StepResult]:
        """Look up a delivery partner's address without letting a failure escape."""
        try:
            profile = self.get_or_create_delivery_profile(user_id)
        except (MedordersError, OSError) as e:
            logger.warning("Could not resolve address for partner %s: %s", user_id, e)
            return None, StepResult("partner_address", StepStatus.FAILED, str(e), user_id)
        if not profile.address:
            return profile.address_dict(), StepResult(
                "partner_address", StepStatus.DEGRADED, "partner has no address on file", user_id
            )
        return profile.address_dict(), StepResult("partner_address", StepStatus.SUCCESS, ref=user_id)
