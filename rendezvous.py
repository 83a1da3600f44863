"""
Rendezvous between in-flight deployments and out-of-band channel posts.

A deployment registers a wait for its app name and suspends; the channel
relay later resolves or rejects it when the supervisor reports
"connected" or "logged out". Whatever finishes first (resolution,
rejection or timeout) wins, and the entry plus its animation task are
released exactly once.
"""

import asyncio
import logging
from typing import Dict, Optional, Any

logger = logging.getLogger(__name__)


class RendezvousError(Exception):
    """Base class for rendezvous failures"""


class WaitAlreadyRegistered(RendezvousError):
    def __init__(self, app_name: str):
        super().__init__(f"A deployment is already waiting on {app_name}")
        self.app_name = app_name


class RendezvousTimeout(RendezvousError):
    def __init__(self, app_name: str, timeout: float):
        super().__init__(f"No status from {app_name} within {timeout:g}s")
        self.app_name = app_name
        self.timeout = timeout


class SessionLoggedOut(RendezvousError):
    def __init__(self, app_name: str):
        super().__init__(f"{app_name} logged out while waiting for connection")
        self.app_name = app_name


class PendingWait:
    """One outstanding wait, plus the optional animation task tied to it"""

    def __init__(self, app_name: str, future: asyncio.Future, animation: Optional[asyncio.Task] = None):
        self.app_name = app_name
        self.future = future
        self.animation = animation
        self.released = False
        self.animation_cancelled = False

    def cancel_animation(self) -> bool:
        """Cancel the animation task; safe to call repeatedly"""
        if self.animation is None or self.animation_cancelled:
            return False
        self.animation_cancelled = True
        if not self.animation.done():
            self.animation.cancel()
        return True


class RendezvousRegistry:
    def __init__(self):
        self._waits: Dict[str, PendingWait] = {}

    def __len__(self) -> int:
        return len(self._waits)

    def __contains__(self, app_name: str) -> bool:
        return app_name in self._waits

    def has_pending(self, app_name: str) -> bool:
        return app_name in self._waits

    def get(self, app_name: str) -> Optional[PendingWait]:
        return self._waits.get(app_name)

    def register(self, app_name: str, animation: Optional[asyncio.Task] = None) -> PendingWait:
        if app_name in self._waits:
            raise WaitAlreadyRegistered(app_name)
        future = asyncio.get_running_loop().create_future()
        wait = PendingWait(app_name, future, animation)
        self._waits[app_name] = wait
        logger.info(f"Registered pending wait for {app_name}")
        return wait

    def attach_animation(self, app_name: str, animation: asyncio.Task):
        wait = self._waits.get(app_name)
        if wait is None or wait.released:
            animation.cancel()
            return
        wait.animation = animation

    def release(self, wait: PendingWait) -> bool:
        """Remove the entry and stop its animation; only the first call has effect"""
        if wait.released:
            return False
        wait.released = True
        if self._waits.get(wait.app_name) is wait:
            del self._waits[wait.app_name]
        wait.cancel_animation()
        logger.debug(f"Released pending wait for {wait.app_name}")
        return True

    def resolve(self, app_name: str, outcome: Any = True) -> bool:
        wait = self._waits.get(app_name)
        if wait is None:
            return False
        if not wait.future.done():
            wait.future.set_result(outcome)
        self.release(wait)
        logger.info(f"Resolved pending wait for {app_name}")
        return True

    def reject(self, app_name: str, error: BaseException) -> bool:
        wait = self._waits.get(app_name)
        if wait is None:
            return False
        if not wait.future.done():
            wait.future.set_exception(error)
        self.release(wait)
        logger.info(f"Rejected pending wait for {app_name}: {error}")
        return True

    def reject_timeout(self, app_name: str, timeout: float = 0) -> bool:
        return self.reject(app_name, RendezvousTimeout(app_name, timeout))

    async def wait_for(self, app_name: str, timeout: float,
                       animation: Optional[asyncio.Task] = None) -> Any:
        """
        Register a wait and suspend until it is resolved, rejected or times out.

        Raises RendezvousTimeout on timeout and re-raises whatever error
        the wait was rejected with.
        """
        wait = self.register(app_name, animation)
        try:
            return await asyncio.wait_for(wait.future, timeout)
        except asyncio.TimeoutError:
            raise RendezvousTimeout(app_name, timeout) from None
        finally:
            self.release(wait)

    def clear(self):
        for wait in list(self._waits.values()):
            if not wait.future.done():
                wait.future.cancel()
            self.release(wait)
