"""Leader election over a lease store.

The elector loops forever:
- Acquire: try the lease every retry period until it is ours
- Lead: notify the listener, renew every retry period
- Lose: stop when another identity took the lease, or when no renewal
  succeeded within the renew deadline; notify the listener and go back
  to acquiring

On cancellation the lease is released so another replica can take over
without waiting out the lease duration. Gained/lost notifications strictly
alternate.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Protocol

from dgraph_export.errors import ConfigInvalid
from dgraph_export.lease import LeaseStore

logger = logging.getLogger(__name__)

JITTER_FACTOR = 0.2


class LeadershipListener(Protocol):
    def on_leadership_gained(self) -> None: ...

    def on_leadership_lost(self, new_leader: str | None = None) -> None: ...


@dataclass(frozen=True)
class ElectionConfig:
    """Lease name, identity and timings (seconds)."""

    name: str
    identity: str
    lease_duration: float = 15.0
    renew_deadline: float = 10.0
    retry_period: float = 2.0

    def validate(self) -> "ElectionConfig":
        if not self.name:
            raise ConfigInvalid("lease name must not be empty")
        if not self.identity:
            raise ConfigInvalid("lease identity must not be empty")
        if self.retry_period <= 0:
            raise ConfigInvalid("retry period must be positive")
        if self.renew_deadline <= self.retry_period:
            raise ConfigInvalid("renew deadline must be greater than retry period")
        if self.lease_duration <= self.renew_deadline:
            raise ConfigInvalid("lease duration must be greater than renew deadline")
        return self

    @classmethod
    def from_settings(cls, settings) -> "ElectionConfig":
        return cls(
            name=settings.lease_name,
            identity=settings.lease_identity,
            lease_duration=settings.lease_duration_seconds,
            renew_deadline=settings.renew_deadline_seconds,
            retry_period=settings.retry_period_seconds,
        )


class LeaderElector:
    """Runs the acquire/renew loop and reports transitions to a listener."""

    def __init__(self, store: LeaseStore, config: ElectionConfig, listener: LeadershipListener):
        self.store = store
        self.config = config.validate()
        self.listener = listener

        self._leading = False
        self._observed_leader: str | None = None

    @property
    def is_leader(self) -> bool:
        return self._leading

    @property
    def observed_leader(self) -> str | None:
        """Last identity seen holding the lease (may be this replica)."""
        return self._observed_leader

    async def run(self) -> None:
        """Elect until cancelled."""
        logger.info("Starting leader election for %r as %s", self.config.name, self.config.identity)
        try:
            while True:
                await self._acquire()
                self._set_leading(True)
                await self._renew()
                self._set_leading(False)
        finally:
            if self._leading:
                await self._release()
                self._set_leading(False)

    def _set_leading(self, leading: bool) -> None:
        if leading == self._leading:
            return
        self._leading = leading
        if leading:
            logger.info("%s started leading %r", self.config.identity, self.config.name)
            self.listener.on_leadership_gained()
        else:
            new_leader = self._observed_leader if self._observed_leader != self.config.identity else None
            logger.info("%s stopped leading %r", self.config.identity, self.config.name)
            self.listener.on_leadership_lost(new_leader)

    async def _acquire(self) -> None:
        while True:
            if await self._try_acquire_or_renew():
                return
            await asyncio.sleep(self.config.retry_period * (1 + random.random() * JITTER_FACTOR))

    async def _renew(self) -> None:
        loop = asyncio.get_running_loop()
        last_renewed = loop.time()
        while True:
            await asyncio.sleep(self.config.retry_period)
            renewed = await self._try_acquire_or_renew()
            if renewed:
                last_renewed = loop.time()
                continue
            if renewed is False:
                logger.warning("Lease %r taken over by %s", self.config.name, self._observed_leader)
                return
            if loop.time() - last_renewed >= self.config.renew_deadline:
                logger.error(
                    "Failed to renew lease %r within %.1fs", self.config.name, self.config.renew_deadline
                )
                return

    async def _try_acquire_or_renew(self) -> bool | None:
        """True if held, False if another identity holds it, None on store error."""
        try:
            acquired = await asyncio.wait_for(
                self.store.try_acquire_or_renew(
                    self.config.name, self.config.identity, self.config.lease_duration
                ),
                timeout=self.config.renew_deadline,
            )
        except asyncio.TimeoutError:
            logger.error("Lease %r: store did not answer within %.1fs", self.config.name, self.config.renew_deadline)
            return None
        except Exception as e:
            logger.error("Lease %r: acquire/renew failed: %s", self.config.name, e)
            return None

        if acquired:
            self._observe(self.config.identity)
            return True

        try:
            record = await self.store.get(self.config.name)
        except Exception as e:
            logger.error("Lease %r: failed to read holder: %s", self.config.name, e)
            return False

        if record is not None and record.is_valid():
            self._observe(record.holder)
        return False

    def _observe(self, holder: str | None) -> None:
        if holder and holder != self._observed_leader:
            logger.info("%s is leader now", holder)
        self._observed_leader = holder

    async def _release(self) -> None:
        try:
            released = await self.store.release(self.config.name, self.config.identity)
        except Exception as e:
            logger.error("Lease %r: release failed: %s", self.config.name, e)
            return
        if released:
            logger.info("Released lease %r", self.config.name)
