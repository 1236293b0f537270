"""Self-scheduling reconciliation worker.

A worker owns one repeating timer. The first tick after run() fires after a
short warm-up period; every tick then resets the period to the configured
steady-state interval before checking whether the worker is running. A
running tick dispatches one reconciliation on its own thread:

    1. discover the public IPv4 address, trying each URL in order
    2. describe the existing A records for sub_domain_name.domain_name
    3. add a record when none exist, otherwise update every record whose
       value differs from the discovered address

Ticks are not serialized against each other. A slow reconciliation can still
be in flight when the next tick fires; only the run/stop transition is
guarded.
"""

from __future__ import annotations

import logging
import math
import re
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from aliyun_ddns.providers import (
    RECORD_TYPE_A,
    DNSProvider,
    IpDiscoveryClient,
)

logger = logging.getLogger(__name__)

INITIAL_INTERVAL_SECONDS = 2.0

# The last octet never matches a lone "0".
IP_RE = re.compile(
    r"((25[0-5]|2[0-4]\d|1\d\d|[1-9]\d|\d)\.){3}(25[0-5]|2[0-4]\d|1\d\d|[1-9]\d|[1-9])"
)

# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class WorkerConfig:
    """Immutable settings for one worker."""

    name: str
    access_key_id: str
    access_key_secret: str
    domain_name: str
    sub_domain_name: str
    interval_minutes: float
    ip_discovery_urls: Tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.ip_discovery_urls:
            raise ValueError(f"[{self.name}] ip_discovery_urls must not be empty")
        if not math.isfinite(self.interval_minutes) or self.interval_minutes <= 0:
            raise ValueError(f"[{self.name}] interval_minutes must be a positive number")
        if self.interval_seconds > threading.TIMEOUT_MAX:
            raise ValueError(f"[{self.name}] interval_minutes is too large")

    @property
    def interval_seconds(self) -> float:
        return self.interval_minutes * 60

    @property
    def fqdn(self) -> str:
        return f"{self.sub_domain_name}.{self.domain_name}"


class OutcomeKind(Enum):
    """What a reconciliation did, for logging."""

    NO_IP_DISCOVERED = "no_ip_discovered"
    DESCRIBE_FAILED = "describe_failed"
    ADDED = "added"
    ADD_FAILED = "add_failed"
    UNCHANGED = "unchanged"
    UPDATED = "updated"
    UPDATE_FAILED = "update_failed"


@dataclass(frozen=True)
class ReconciliationOutcome:
    kind: OutcomeKind
    record_id: str = ""
    ip: str = ""
    reason: str = ""


# =============================================================================
# Scheduling Primitives
# =============================================================================


class AtomicFlag:
    """Boolean with an atomic compare-and-set."""

    def __init__(self, value: bool = False):
        self._value = value
        self._lock = threading.Lock()

    def get(self) -> bool:
        with self._lock:
            return self._value

    def set(self, value: bool) -> None:
        with self._lock:
            self._value = value

    def compare_and_set(self, expected: bool, new: bool) -> bool:
        """Set to new only if currently expected. Returns True if it did."""
        with self._lock:
            if self._value != expected:
                return False
            self._value = new
            return True


class RepeatingTimer:
    """Thread backed timer that calls callback every `interval` seconds.

    `interval` may be changed at any time, including from inside the
    callback; the new value applies from the next wait.
    """

    def __init__(self, interval: float, callback: Callable[[], None], name: str = "timer"):
        self.interval = float(interval)
        self._callback = callback
        self._name = name
        self._lock = threading.Lock()
        self._stopped: Optional[threading.Event] = None
        self._closed = False

    @property
    def active(self) -> bool:
        with self._lock:
            return self._stopped is not None

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def start(self) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError(f"Timer '{self._name}' is closed")
            if self._stopped is not None:
                return
            stopped = threading.Event()
            self._stopped = stopped
        thread = threading.Thread(
            target=self._loop, args=(stopped,), name=self._name, daemon=True
        )
        thread.start()

    def stop(self) -> None:
        with self._lock:
            if self._stopped is not None:
                self._stopped.set()
                self._stopped = None

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._stopped is not None:
                self._stopped.set()
                self._stopped = None

    def _loop(self, stopped: threading.Event) -> None:
        while not stopped.wait(self.interval):
            try:
                self._callback()
            except Exception as e:
                logger.error(f"Timer '{self._name}' callback failed: {e}", exc_info=True)


# =============================================================================
# IP Discovery
# =============================================================================


def discover_public_ip(
    urls: Sequence[str], client: IpDiscoveryClient, worker_name: str = ""
) -> Optional[str]:
    """Return the first IPv4 address found, trying urls in order."""
    for url in urls:
        result = client.get(url)
        if result.ok:
            match = IP_RE.search(result.body)
            if match:
                ip = match.group(0)
                logger.info(f"[{worker_name}] fetched public ip from ( {url} ): {ip}")
                return ip
        logger.info(f"[{worker_name}] fetch public ip from {url} failed, trying next url")
    return None


# =============================================================================
# Reconciliation Worker
# =============================================================================


class ReconciliationWorker:
    def __init__(
        self,
        config: WorkerConfig,
        ip_client: IpDiscoveryClient,
        dns_provider: DNSProvider,
        timer_factory: Callable[..., RepeatingTimer] = RepeatingTimer,
    ):
        self.config = config
        self.ip_client = ip_client
        self.dns_provider = dns_provider
        self._running = AtomicFlag(False)
        self._disposed = AtomicFlag(False)
        self._timer = timer_factory(
            INITIAL_INTERVAL_SECONDS, self._on_tick, name=f"ddns-{config.name}"
        )

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def is_running(self) -> bool:
        return self._running.get()

    @property
    def timer(self) -> RepeatingTimer:
        return self._timer

    def run(self) -> None:
        if self._disposed.get():
            raise RuntimeError(f"Worker '{self.name}' has been disposed")
        if self._running.compare_and_set(False, True):
            logger.debug(f"[{self.name}] worker running ...")
            self._timer.start()

    def stop(self) -> None:
        logger.debug(f"[{self.name}] worker stopping ...")
        self._running.set(False)
        self._timer.stop()
        logger.debug(f"[{self.name}] worker stopped")

    def dispose(self) -> None:
        if not self._disposed.compare_and_set(False, True):
            return
        self._running.set(False)
        self._timer.close()
        logger.debug(f"[{self.name}] worker disposed")

    close = dispose

    def __enter__(self) -> "ReconciliationWorker":
        return self

    def __exit__(self, *exc_info) -> None:
        self.dispose()

    def _reschedule(self) -> None:
        self._timer.interval = self.config.interval_seconds

    def _on_tick(self) -> None:
        self._reschedule()
        if not self._running.get():
            return
        self._dispatch(self.reconcile)

    def _dispatch(self, job: Callable[[], object]) -> None:
        threading.Thread(target=job, name=f"ddns-{self.name}-tick", daemon=True).start()

    def reconcile(self) -> List[ReconciliationOutcome]:
        """Run one reconciliation. Never raises."""
        logger.info(f"[{self.name}] reconciling {self.config.fqdn} ...")
        outcomes: List[ReconciliationOutcome] = []
        try:
            self._reconcile(outcomes)
        except Exception as e:
            logger.warning(f"[{self.name}] reconciliation failed: {e}")
        return outcomes

    def _reconcile(self, outcomes: List[ReconciliationOutcome]) -> None:
        conf = self.config

        real_ip = discover_public_ip(conf.ip_discovery_urls, self.ip_client, self.name)
        if not real_ip:
            logger.info(f"[{self.name}] fetch public ip failed for all urls, skip")
            outcomes.append(ReconciliationOutcome(OutcomeKind.NO_IP_DISCOVERED))
            return

        described = self.dns_provider.describe_records(
            conf.domain_name, conf.sub_domain_name, RECORD_TYPE_A
        )
        if described.has_error:
            logger.info(f"[{self.name}] describe records failed ( {described.message} ), skip")
            outcomes.append(
                ReconciliationOutcome(OutcomeKind.DESCRIBE_FAILED, reason=described.message)
            )
            return

        if not described.records:
            logger.info(f"[{self.name}] no record for {conf.fqdn}, adding ...")
            added = self.dns_provider.add_record(
                conf.domain_name, conf.sub_domain_name, real_ip, RECORD_TYPE_A
            )
            if added.has_error:
                logger.info(f"[{self.name}] add record failed ( {added.message} ), skip")
                outcomes.append(
                    ReconciliationOutcome(OutcomeKind.ADD_FAILED, ip=real_ip, reason=added.message)
                )
            else:
                logger.info(f"[{self.name}] added record {conf.fqdn} -> {real_ip}")
                outcomes.append(ReconciliationOutcome(OutcomeKind.ADDED, ip=real_ip))
            return

        # Every mismatched record gets its own update.
        for record in described.records:
            if record.value == real_ip:
                logger.info(f"[{self.name}] record {record.record_id} unchanged, skip")
                outcomes.append(
                    ReconciliationOutcome(OutcomeKind.UNCHANGED, record_id=record.record_id)
                )
                continue

            logger.info(
                f"[{self.name}] updating record {record.record_id}: {record.value} -> {real_ip}"
            )
            updated = self.dns_provider.update_record(
                record.record_id, conf.sub_domain_name, real_ip, RECORD_TYPE_A
            )
            if updated.has_error:
                logger.info(
                    f"[{self.name}] update record {record.record_id} failed "
                    f"( {updated.message} ), skip"
                )
                outcomes.append(
                    ReconciliationOutcome(
                        OutcomeKind.UPDATE_FAILED,
                        record_id=record.record_id,
                        ip=real_ip,
                        reason=updated.message,
                    )
                )
            else:
                logger.info(f"[{self.name}] updated record {record.record_id} -> {real_ip}")
                outcomes.append(
                    ReconciliationOutcome(
                        OutcomeKind.UPDATED, record_id=record.record_id, ip=real_ip
                    )
                )
