"""Synthetic user pools: reuse still-valid users, provision the rest."""

from __future__ import annotations

import random
from datetime import timedelta
from typing import Iterable

from court_rotation.config import RotationSettings
from court_rotation.domain.models import POOL_SIZE, Scope, User
from court_rotation.logging import logger
from court_rotation.services.exceptions import PartialProvisioning, ReservationApiError
from court_rotation.services.reservation_client import ReservationClient, generate_phone_number
from court_rotation.storage import StateStore
from court_rotation.utils.datetime import Clock, utc_now


class UserPoolManager:
    """Hands out pools of approved users for new sessions.

    Registration is slow and rate limited on the reservation side, so users
    stored with the previous session of the same scope are reused while they
    are approved and unexpired. Only the shortfall is registered and approved.
    """

    def __init__(
        self,
        client: ReservationClient,
        store: StateStore,
        settings: RotationSettings | None = None,
        *,
        clock: Clock = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.settings = settings or RotationSettings()
        self._clock = clock
        self._rng = rng or random.Random()

    async def reusable_users(self, scope: Scope, exclude: Iterable[str] = ()) -> list[User]:
        previous = await self.store.sessions(scope).load()
        if previous is None:
            return []
        excluded = set(exclude)
        now = self._clock()
        return [
            user
            for user in previous.users
            if user.animal_name not in excluded and user.is_eligible(now)
        ]

    async def acquire_pool(
        self,
        count: int = POOL_SIZE,
        scope: Scope = "single",
        exclude: Iterable[str] = (),
    ) -> list[User]:
        excluded = set(exclude)
        reusable = await self.reusable_users(scope, excluded)
        if len(reusable) >= count:
            logger.info("user_pool_reused", scope=scope, count=count, available=len(reusable))
            return reusable[:count]

        shortfall = count - len(reusable)
        logger.info(
            "user_pool_provisioning",
            scope=scope,
            reused=len(reusable),
            shortfall=shortfall,
        )
        taken_phones = {user.phone_number for user in reusable}
        fresh = await self.provision(shortfall, taken_phones=taken_phones, taken_names=excluded)
        pool = reusable + fresh
        if len(pool) < count:
            logger.warning(
                "user_pool_partial", scope=scope, produced=len(pool), required=count
            )
            raise PartialProvisioning(produced=len(pool), required=count, users=pool)
        return pool

    async def provision(
        self,
        count: int,
        *,
        taken_phones: Iterable[str] = (),
        taken_names: Iterable[str] = (),
    ) -> list[User]:
        """Register and approve up to ``count`` users; failures are skipped, not retried."""

        phones = self._unique_phone_numbers(count, set(taken_phones))
        blocked_names = set(taken_names)

        registered: list[User] = []
        for phone in phones:
            try:
                result = await self.client.register_user(phone)
            except ReservationApiError as exc:
                logger.warning("user_registration_failed", phone_number=phone, error=str(exc))
                continue
            if result.user.animal_name in blocked_names:
                logger.warning(
                    "user_registration_duplicate", animal_name=result.user.animal_name
                )
                continue
            blocked_names.add(result.user.animal_name)
            registered.append(result.user)

        now = self._clock()
        expires_at = now + timedelta(hours=self.settings.user_validity_hours)
        approved: list[User] = []
        for user in registered:
            try:
                await self.client.approve_user(user.animal_name)
            except ReservationApiError as exc:
                logger.warning(
                    "user_approval_failed", animal_name=user.animal_name, error=str(exc)
                )
                continue
            approved.append(
                user.model_copy(
                    update={
                        "is_approved": True,
                        "created_at": user.created_at or now,
                        "expires_at": expires_at,
                    }
                )
            )

        logger.info(
            "user_pool_provisioned",
            requested=count,
            registered=len(registered),
            approved=len(approved),
        )
        return approved

    def _unique_phone_numbers(self, count: int, taken: set[str]) -> list[str]:
        phones: list[str] = []
        seen = set(taken)
        while len(phones) < count:
            phone = generate_phone_number(self._rng)
            if phone in seen:
                continue
            seen.add(phone)
            phones.append(phone)
        return phones


__all__ = ["UserPoolManager"]
