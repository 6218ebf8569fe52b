"""Run controller: one flow run at a time, streamed as events."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import AsyncIterator, Optional

from .artifacts import ArtifactStore, HttpArtifactStore
from .auth import TokenProvider
from .cancellation import CancellationToken, RunCancelled, StopEarly
from .config import AutopilotConfig, load_config
from .contracts import FlowVariant, RunEvent, RunMode
from .events import BaseEventChannel, RunLogger, get_event_channel
from .flows import BaseFlow, FlowTimings, build_flow
from .persistence import SnapshotStore, get_snapshot_store
from .platform import PlatformClient

logger = logging.getLogger(__name__)

PREEMPT_GRACE = 5.0


class RunHandle:
    """A started run: its flow, event channel, cancellation token and task."""

    def __init__(
        self,
        variant: FlowVariant,
        flow: BaseFlow,
        channel: BaseEventChannel,
        cancel: CancellationToken,
    ) -> None:
        self.variant = variant
        self.flow = flow
        self.channel = channel
        self.cancel = cancel
        self.task: Optional[asyncio.Task] = None

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    def events(self) -> AsyncIterator[RunEvent]:
        return self.channel.subscribe()

    async def wait(self) -> None:
        if self.task is not None:
            await asyncio.shield(self.task)


class RunController:
    """Start, stream and cancel flow runs.

    Starting a run while another is active cancels the older one first: its
    token is signalled and, if it does not finish within ``preempt_grace``
    seconds, its task is cancelled.
    """

    def __init__(
        self,
        config: Optional[AutopilotConfig] = None,
        *,
        platform: Optional[PlatformClient] = None,
        token_provider: Optional[TokenProvider] = None,
        artifact_store: Optional[ArtifactStore] = None,
        snapshot_store: Optional[SnapshotStore] = None,
        timings: Optional[FlowTimings] = None,
        rng: Optional[random.Random] = None,
        preempt_grace: float = PREEMPT_GRACE,
    ) -> None:
        self.config = config or load_config()
        self.platform = platform or PlatformClient(self.config.api.base_url, self.config.api.timeout)
        self.token_provider = token_provider or TokenProvider(self.config.auth.secrets_path)
        self.artifact_store = artifact_store or HttpArtifactStore(
            bucket=self.config.storage.bucket,
            region=self.config.storage.region,
            public_base_url=self.config.storage.public_base_url,
            upload_base_url=self.config.storage.upload_base_url,
        )
        self.snapshot_store = snapshot_store or get_snapshot_store(config=self.config)
        self.timings = timings
        self.rng = rng
        self.preempt_grace = preempt_grace
        self._current: Optional[RunHandle] = None
        self._lock = asyncio.Lock()

    @property
    def current(self) -> Optional[RunHandle]:
        return self._current

    async def start(
        self,
        variant: FlowVariant | str,
        mode: RunMode | str = RunMode.FULL,
        to_step: Optional[str] = None,
    ) -> RunHandle:
        """Preempt any active run and start ``variant`` in the background."""
        variant = FlowVariant.parse(variant) if isinstance(variant, str) else variant
        mode = RunMode(mode)
        async with self._lock:
            await self._preempt()
            channel = get_event_channel()
            cancel = CancellationToken()
            flow = build_flow(
                variant,
                self.config,
                platform=self.platform,
                token_provider=self.token_provider,
                artifact_store=self.artifact_store,
                snapshot_store=self.snapshot_store,
                log=RunLogger(channel),
                cancel=cancel,
                timings=self.timings,
                rng=self.rng,
            )
            if mode == RunMode.TO_STEP and to_step not in flow.plan():
                raise ValueError(f"Unknown step '{to_step}' for flow {variant.value}")
            handle = RunHandle(variant, flow, channel, cancel)
            handle.task = asyncio.create_task(self._drive(handle, mode, to_step))
            self._current = handle
            logger.info(f"Started {variant.value} run ({mode.value})")
            return handle

    async def stream(
        self,
        variant: FlowVariant | str,
        mode: RunMode | str = RunMode.FULL,
        to_step: Optional[str] = None,
    ) -> AsyncIterator[RunEvent]:
        """Start a run and yield its events until it ends.

        Closing the iterator early, as a disconnecting client does, cancels
        the run.
        """
        handle = await self.start(variant, mode, to_step)
        try:
            async for event in handle.events():
                yield event
        finally:
            if not handle.done:
                await self._stop(handle)

    async def cancel(self) -> bool:
        """Cancel the active run. Returns ``False`` when nothing is running."""
        handle = self._current
        if handle is None or handle.done:
            return False
        await self._stop(handle)
        return True

    async def aclose(self) -> None:
        await self.cancel()
        await self.platform.aclose()

    # ------------------------------------------------------------------
    # Internals
    async def _preempt(self) -> None:
        handle = self._current
        if handle is not None and not handle.done:
            logger.info(f"Preempting active {handle.variant.value} run")
            await self._stop(handle)

    async def _stop(self, handle: RunHandle) -> None:
        handle.cancel.cancel()
        if handle.task is None:
            return
        done, _ = await asyncio.wait({handle.task}, timeout=self.preempt_grace)
        if not done:
            handle.task.cancel()
            await asyncio.wait({handle.task})

    async def _drive(self, handle: RunHandle, mode: RunMode, to_step: Optional[str]) -> None:
        log = handle.flow.log
        flow_name = handle.variant.value
        log.info("Run started", {"flow": flow_name})
        try:
            await handle.flow.run(mode, to_step)
            log.info("Run finished", {"flow": flow_name}, 100)
        except StopEarly:
            log.info("Stopped at requested step", {"flow": flow_name, "step": to_step}, 100)
        except RunCancelled:
            log.info("Run cancelled", {"flow": flow_name})
        except asyncio.CancelledError:
            log.info("Run cancelled", {"flow": flow_name})
            raise
        except Exception as exc:
            logger.exception(f"{flow_name} run failed")
            log.error("Run failed", str(exc))
        finally:
            handle.channel.close()
            if self._current is handle:
                self._current = None
