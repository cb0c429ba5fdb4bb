import asyncio

from .config import LOCK_REAPER_INTERVAL_SECONDS, SERVICE_NAME


async def run_lock_reaper_sweep(session, ledger, notifier) -> list[str]:
    """
    Release every expired reservation. Safe to call at any cadence and
    concurrently with dispatch: rows re-claimed or released since the scan
    are left alone.
    """
    try:
        released = await ledger.expire(session)
    except Exception:
        await session.rollback()
        raise

    for reservation in released:
        await notifier.lock_expired(reservation.booking_id, reservation.provider_id)
    return [r.booking_id for r in released]


class LockReaper:
    def __init__(self, session_factory, ledger, notifier, interval_seconds: float = LOCK_REAPER_INTERVAL_SECONDS):
        self.session_factory = session_factory
        self.ledger = ledger
        self.notifier = notifier
        self.interval_seconds = interval_seconds
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep_once(self) -> list[str]:
        async with self.session_factory() as session:
            return await run_lock_reaper_sweep(session, self.ledger, self.notifier)

    async def _loop(self):
        while not self._stop_event.is_set():
            try:
                released = await self.sweep_once()
                if released:
                    print(f"[{SERVICE_NAME}] lock reaper released {len(released)} expired reservation(s)")
            except Exception as e:
                print(f"[{SERVICE_NAME}] lock reaper sweep failed: {e}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    def start(self):
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop())

    async def stop(self):
        self._stop_event.set()
        if self._task:
            try:
                await self._task
            finally:
                self._task = None
