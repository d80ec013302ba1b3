"""
Org/identity collaborator interface.

The engine never maintains the staff directory itself; it only asks these
questions of whatever directory the portal plugs in (HR database, LDAP,
Entra ID, ...).
"""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from loguru import logger


class OrgDirectoryBase(ABC):
    """
    Abstract base class for org chart lookups.

    Implementations can use:
    - In-memory data (for testing/demo)
    - The portal's staff tables
    - An external identity provider
    """

    @abstractmethod
    def get_manager(self, user_id: str) -> Optional[str]:
        """Return the direct manager's user id, or None if none is assigned."""
        pass

    @abstractmethod
    def get_users_by_role(self, role_code: str) -> list[str]:
        """Return the ids of all *active* users holding the role."""
        pass

    @abstractmethod
    def get_user_roles(self, user_id: str) -> set[str]:
        """Return the role codes held by a user."""
        pass

    @abstractmethod
    def is_active(self, user_id: str) -> bool:
        pass

    @abstractmethod
    def get_profile(self, user_id: str) -> dict:
        """
        Return org attributes used for scoped flow selection.

        Keys (all optional): branch_id, region_id, department_id, position_id
        """
        pass

    def get_manager_chain(self, user_id: str, depth: int) -> list[str]:
        """
        Walk up the reporting chain.

        Returns at most `depth` manager ids, nearest first. The list is
        shorter than `depth` when the chain ends early.
        """
        chain: list[str] = []
        seen = {user_id}
        current = user_id
        while len(chain) < depth:
            manager = self.get_manager(current)
            if manager is None or manager in seen:
                break
            chain.append(manager)
            seen.add(manager)
            current = manager
        return chain


class InMemoryOrgDirectory(OrgDirectoryBase):
    """Dictionary-backed directory for development and tests."""

    def __init__(self):
        self._managers: dict[str, Optional[str]] = {}
        self._roles: dict[str, set[str]] = {}
        self._profiles: dict[str, dict] = {}
        self._inactive: set[str] = set()

    @classmethod
    def from_json(cls, path: str | Path) -> "InMemoryOrgDirectory":
        """
        Load staff records from a JSON file.

        Expected format:
            {"users": [{"id": "u-1", "manager_id": "u-0", "roles": ["BRANCH_MANAGER"],
                        "active": true, "branch_id": "BR-01", "region_id": "R-1"}]}
        """
        directory = cls()
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        for record in data.get("users", []):
            record = dict(record)
            user_id = record.pop("id")
            directory.add_user(
                user_id,
                manager_id=record.pop("manager_id", None),
                roles=record.pop("roles", None),
                active=record.pop("active", True),
                **record,
            )
        logger.info("Org directory loaded", path=str(path), users=len(directory._managers))
        return directory

    def add_user(
        self,
        user_id: str,
        *,
        manager_id: Optional[str] = None,
        roles: Optional[list[str]] = None,
        active: bool = True,
        **profile,
    ) -> None:
        self._managers[user_id] = manager_id
        self._roles[user_id] = set(roles or [])
        self._profiles[user_id] = dict(profile)
        if active:
            self._inactive.discard(user_id)
        else:
            self._inactive.add(user_id)

    def deactivate(self, user_id: str) -> None:
        self._inactive.add(user_id)

    def get_manager(self, user_id: str) -> Optional[str]:
        return self._managers.get(user_id)

    def get_users_by_role(self, role_code: str) -> list[str]:
        return sorted(
            user_id
            for user_id, roles in self._roles.items()
            if role_code in roles and user_id not in self._inactive
        )

    def get_user_roles(self, user_id: str) -> set[str]:
        return set(self._roles.get(user_id, set()))

    def is_active(self, user_id: str) -> bool:
        return user_id in self._managers and user_id not in self._inactive

    def get_profile(self, user_id: str) -> dict:
        return dict(self._profiles.get(user_id, {}))
