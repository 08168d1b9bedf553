"""Read-only access to the user's health data for context assembly."""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from health_assistant.core.models import BiometricSnapshot, HealthProfile, PlanStatus


class HealthDataSource(ABC):
    """Collaborator that supplies profile, biometrics and plan flags."""

    @abstractmethod
    async def get_profile(self, user_id: str) -> Optional[HealthProfile]:
        ...

    @abstractmethod
    async def get_recent_biometrics(self, user_id: str, days: int) -> List[BiometricSnapshot]:
        """Up to ``days`` most recent daily samples, oldest first."""

    @abstractmethod
    async def get_plan_status(self, user_id: str) -> Optional[PlanStatus]:
        ...


class InMemoryHealthDataSource(HealthDataSource):
    """Dictionary-backed source, seeded through ``set_health_context``."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._profiles: Dict[str, HealthProfile] = {}
        self._biometrics: Dict[str, List[BiometricSnapshot]] = {}
        self._plans: Dict[str, PlanStatus] = {}

    async def set_health_context(
        self,
        user_id: str,
        profile: Optional[HealthProfile] = None,
        biometrics: Optional[List[BiometricSnapshot]] = None,
        plans: Optional[PlanStatus] = None
    ) -> None:
        """Replace whichever parts are given; the rest are left as they are."""
        async with self._lock:
            if profile is not None:
                self._profiles[user_id] = profile
            if biometrics is not None:
                self._biometrics[user_id] = sorted(biometrics, key=lambda s: s.date)
            if plans is not None:
                self._plans[user_id] = plans

    async def get_profile(self, user_id: str) -> Optional[HealthProfile]:
        return self._profiles.get(user_id)

    async def get_recent_biometrics(self, user_id: str, days: int) -> List[BiometricSnapshot]:
        if days <= 0:
            return []
        return list(self._biometrics.get(user_id, [])[-days:])

    async def get_plan_status(self, user_id: str) -> Optional[PlanStatus]:
        return self._plans.get(user_id)
