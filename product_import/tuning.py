from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from product_import.db import store_step
from product_import.errors import TuningRestoreError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TunedSetting:
    name: str
    relaxed: int
    safe: int
    set_sql: str
    read_sql: str
    session_sql: str | None = None


@dataclass(frozen=True)
class TuningProfile:
    dialect: str
    settings: tuple[TunedSetting, ...] = ()

    def safe_values(self) -> dict[str, int]:
        return {setting.name: setting.safe for setting in self.settings}

    def relaxed_values(self) -> dict[str, int]:
        return {setting.name: setting.relaxed for setting in self.settings}


def _mysql_global(name: str, relaxed: int, safe: int, session: bool = False) -> TunedSetting:
    # SET GLOBAL only changes the default for connections opened later; the
    # pooled connection already held by the loader needs SET SESSION as well.
    return TunedSetting(
        name=name,
        relaxed=relaxed,
        safe=safe,
        set_sql=f"SET GLOBAL {name} = {{value}}",
        read_sql=f"SELECT @@GLOBAL.{name}",
        session_sql=f"SET SESSION {name} = {{value}}" if session else None,
    )


def _sqlite_pragma(name: str, relaxed: int, safe: int) -> TunedSetting:
    return TunedSetting(
        name=name,
        relaxed=relaxed,
        safe=safe,
        set_sql=f"PRAGMA {name} = {{value}}",
        read_sql=f"PRAGMA {name}",
    )


PROFILES: dict[str, TuningProfile] = {
    "mysql": TuningProfile(
        dialect="mysql",
        settings=(
            _mysql_global("unique_checks", 0, 1, session=True),
            _mysql_global("foreign_key_checks", 0, 1, session=True),
            # sql_log_bin has no global scope on MySQL 8; redo-log flushing is the durability knob.
            _mysql_global("innodb_flush_log_at_trx_commit", 2, 1),
        ),
    ),
    "sqlite": TuningProfile(
        dialect="sqlite",
        settings=(
            _sqlite_pragma("foreign_keys", 0, 1),
            _sqlite_pragma("synchronous", 0, 2),
        ),
    ),
}


def profile_for(dialect_name: str) -> TuningProfile:
    return PROFILES.get(dialect_name, TuningProfile(dialect=dialect_name))


def store_key(db: Session) -> str:
    return db.get_bind().url.render_as_string(hide_password=True)


class TuningLock:
    """Lease guarding the relax/restore window across concurrent importers.

    Uses a Redis lock when one is configured and reachable, otherwise a
    lock shared by every importer in this process. With ``store`` set the
    lease is scoped to that store, so importers into unrelated databases
    never wait on each other.
    """

    _local_locks: dict[str, threading.Lock] = {}
    _registry_guard = threading.Lock()

    def __init__(
        self,
        name: str,
        redis_url: str | None = None,
        timeout_seconds: int = 3600,
        wait_seconds: float = 5.0,
        store: str | None = None,
    ) -> None:
        self.name = f"{name}:{store}" if store else name
        self.timeout_seconds = timeout_seconds
        self.wait_seconds = wait_seconds
        self._redis: Redis | None = None
        self._held = None
        if redis_url:
            try:
                self._redis = Redis.from_url(redis_url)
                self._redis.ping()
            except RedisError as exc:
                logger.warning("Redis unavailable for tuning lease, using process-local lock: %s", exc)
                self._redis = None

    @property
    def held(self) -> bool:
        return self._held is not None

    def acquire(self) -> bool:
        if self._held is not None:
            return True
        if self._redis is not None:
            try:
                lease = self._redis.lock(self.name, timeout=self.timeout_seconds, blocking_timeout=self.wait_seconds)
                if lease.acquire():
                    self._held = lease
                    return True
                return False
            except RedisError as exc:
                logger.warning("Redis lease failed, using process-local lock: %s", exc)
                self._redis = None
        local = self._local_lock(self.name)
        if local.acquire(timeout=self.wait_seconds):
            self._held = local
            return True
        return False

    def release(self) -> None:
        held, self._held = self._held, None
        if held is None:
            return
        try:
            held.release()
        except RedisError as exc:
            # An expired lease has already been released by Redis.
            logger.warning("Tuning lease %s was not released cleanly: %s", self.name, exc)

    @classmethod
    def _local_lock(cls, name: str) -> threading.Lock:
        with cls._registry_guard:
            return cls._local_locks.setdefault(name, threading.Lock())


class EngineTuner:
    """Relaxes store-wide safety checks for a bulk load and puts them back.

    The settings are global to the store (MySQL also sets the
    session-capable ones on this session), so the relaxed window is held under a ``TuningLock``. When the lease is busy
    the load runs with checks enabled instead of waiting indefinitely.
    """

    def __init__(self, db: Session, lock: TuningLock | None = None, enabled: bool = True) -> None:
        self.db = db
        self.lock = lock
        self.enabled = enabled
        self.profile = profile_for(db.get_bind().dialect.name)
        self.relaxed = False

    def relax(self) -> bool:
        if not self.enabled:
            logger.info("Engine tuning disabled; bulk load runs with safety checks on")
            return False
        if not self.profile.settings:
            logger.info("No engine tuning profile for dialect %s", self.profile.dialect)
            return False
        if self.lock is not None and not self.lock.acquire():
            logger.warning("Tuning lease %s is busy; bulk load runs with safety checks on", self.lock.name)
            return False

        applied: list[str] = []
        for setting in self.profile.settings:
            try:
                self._apply(setting, setting.relaxed)
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.warning("Could not relax %s: %s", setting.name, exc)
                continue
            applied.append(setting.name)

        self.relaxed = bool(applied)
        logger.info("Relaxed engine settings for bulk import: %s", ", ".join(applied) or "none")
        return self.relaxed

    def restore(self) -> None:
        """Put every tuned setting back to its safe value and release the lease.

        All settings are attempted even if one fails; failures are collected
        into a single ``TuningRestoreError``. If another importer holds the
        lease, its relaxed window is left alone and that importer restores.
        """
        if self.enabled and self.profile.settings and self.lock is not None and not self.lock.acquire():
            self.relaxed = False
            logger.info("Tuning lease %s is held by another import; leaving engine settings to it", self.lock.name)
            return

        failures: dict[str, str] = {}
        try:
            if self.enabled:
                for setting in self.profile.settings:
                    try:
                        self._apply(setting, setting.safe)
                    except SQLAlchemyError as exc:
                        self.db.rollback()
                        failures[setting.name] = str(exc)
        finally:
            self.relaxed = False
            if self.lock is not None:
                self.lock.release()

        if failures:
            raise TuningRestoreError(
                "Engine safety settings could not be restored",
                details={"settings": failures},
            )
        if self.enabled and self.profile.settings:
            logger.info("Restored engine settings: %s", ", ".join(s.name for s in self.profile.settings))

    def current(self) -> dict[str, int]:
        return {
            setting.name: int(self.db.execute(text(setting.read_sql)).scalar_one())
            for setting in self.profile.settings
        }

    def _apply(self, setting: TunedSetting, value: int) -> None:
        with store_step(f"Set {setting.name} = {int(value)}"):
            self.db.execute(text(setting.set_sql.format(value=int(value))))
            if setting.session_sql:
                self.db.execute(text(setting.session_sql.format(value=int(value))))
            self.db.commit()
