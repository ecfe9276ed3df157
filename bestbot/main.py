"""
Main application: FastAPI server + orchestrator for the per-target monitor loops.
"""

import asyncio
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from bestbot import config
from bestbot.attempt_store import attempts_for, load_attempts
from bestbot.browser import open_playwright_driver
from bestbot.config import Target, load_targets
from bestbot.driver import Deadline, SessionDriver
from bestbot.errors import ConfigError, FatalDriverError
from bestbot.events import EventBroker, EventType, MonitorState, event_broker
from bestbot.monitor import EXIT_CLEAN, EXIT_FATAL, DriverFactory, MonitorLoop
from bestbot.notifier import NotificationSink, build_notification_hub


EXIT_CONFIG = 2


class HealthResponse(BaseModel):
    """Response model for health check."""
    status: str
    mode: str
    timestamp: str


class TargetStatus(BaseModel):
    name: str
    url: str
    state: str
    paused: bool
    polls: int
    attempts_made: int
    poll_interval: float


class StatusResponse(BaseModel):
    """Response model for status endpoint."""
    mode: str
    dry_run: bool
    uptime_seconds: float
    targets: List[TargetStatus]
    last_attempts: dict


async def playwright_session(target: Target) -> SessionDriver:
    """Open a fresh browser session for one target."""
    return await open_playwright_driver(target.name, implicit_wait=target.timing.element_timeout)


class Orchestrator:
    """Owns the monitor loops (run mode) or the login sessions (bootstrap mode)."""

    def __init__(
        self,
        targets: List[Target],
        mode: str = config.MODE,
        driver_factory: DriverFactory = playwright_session,
        sink: Optional[NotificationSink] = None,
        dry_run: bool = config.DRY_RUN,
        broker: EventBroker = event_broker
    ):
        self.targets = targets
        self.mode = mode
        self.dry_run = dry_run
        self.exit_code = EXIT_CLEAN
        # Called once every monitor has ended on its own
        self.on_finished: Optional[Callable[[], None]] = None

        self._driver_factory = driver_factory
        self._sink = sink
        self.broker = broker
        self._shutdown_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.monitors: Dict[str, MonitorLoop] = {}

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def get_monitor(self, name: str) -> MonitorLoop:
        if name not in self.monitors:
            raise KeyError(name)
        return self.monitors[name]

    def select(self, name: Optional[str]) -> List[MonitorLoop]:
        if name is None:
            return list(self.monitors.values())
        return [self.get_monitor(name)]

    async def start(self) -> None:
        await self.broker.emit(
            EventType.STEP, "application_startup",
            mode=self.mode, dry_run=self.dry_run,
            targets=[t.name for t in self.targets]
        )
        if self.mode == "bootstrap":
            self._task = asyncio.create_task(self.run_bootstrap_mode())
            return

        sink = self._sink or build_notification_hub(self.broker)
        for target in self.targets:
            self.monitors[target.name] = MonitorLoop(
                target, self._driver_factory, sink,
                dry_run=self.dry_run, broker=self.broker
            )
        self._task = asyncio.create_task(self.run_normal_mode())

    async def stop(self) -> None:
        await self.broker.emit(
            EventType.STEP, "application_shutdown", message="Graceful shutdown initiated"
        )
        self.request_stop()
        await self.wait()

    async def wait(self) -> int:
        """Wait for the running mode to finish. Returns the process exit code."""
        if self._task:
            await self._task
        return self.exit_code

    def request_stop(self) -> None:
        self._shutdown_event.set()
        for monitor in self.monitors.values():
            monitor.stop()

    async def run_bootstrap_mode(self) -> None:
        """
        Bootstrap mode: open each target's sign-in page in its own profile so
        the operator can log in through the headed browser.
        """
        drivers: List[SessionDriver] = []
        try:
            for target in self.targets:
                self.broker.set_state(target.name, MonitorState.BOOTSTRAP)
                driver = await self._driver_factory(target)
                drivers.append(driver)
                url = target.sign_in_url or target.url
                await driver.navigate(url, Deadline(target.timing.page_load_timeout))
                await self.broker.emit(
                    EventType.ACTION_REQUIRED, "bootstrap_login_required",
                    target=target.name, url=url,
                    message="Log in to the retailer in this window, then stop the container."
                )

            await self._shutdown_event.wait()
        except FatalDriverError as e:
            self.exit_code = EXIT_FATAL
            await self.broker.emit(EventType.ERROR, "bootstrap_failed", error=str(e))
        finally:
            for driver in drivers:
                await driver.close()
            self._finished()

    async def run_normal_mode(self) -> None:
        """Run mode: one independent monitor loop per target."""
        await self.broker.emit(
            EventType.STATE_CHANGE, "run_mode_start",
            targets=[t.name for t in self.targets], dry_run=self.dry_run
        )

        results = await asyncio.gather(
            *(monitor.run() for monitor in self.monitors.values()),
            return_exceptions=True
        )

        for name, result in zip(self.monitors, results):
            if isinstance(result, BaseException):
                await self.broker.emit(EventType.ERROR, "monitor_crashed", target=name, error=repr(result))
                self.exit_code = EXIT_FATAL
            elif result != EXIT_CLEAN:
                self.exit_code = EXIT_FATAL

        await self.broker.emit(EventType.STATE_CHANGE, "run_mode_finished", exit_code=self.exit_code)
        self._finished()

    def _finished(self) -> None:
        self._shutdown_event.set()
        if self.on_finished:
            self.on_finished()


def create_app(orchestrator: Orchestrator, attempts_path: Optional[Path] = None) -> FastAPI:
    """Build the status/control API around an orchestrator."""
    broker = orchestrator.broker

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan context manager."""
        await orchestrator.start()
        yield
        await orchestrator.stop()

    app = FastAPI(
        title="BestBot",
        description="Monitors retail product pages and buys scarce items when they come in stock",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _select(target: Optional[str]) -> List[MonitorLoop]:
        if orchestrator.mode == "bootstrap":
            raise HTTPException(status_code=400, detail="No monitors in bootstrap mode")
        try:
            monitors = orchestrator.select(target)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown target: {target}")
        if not monitors:
            raise HTTPException(status_code=400, detail="Monitors not initialized")
        return monitors

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint."""
        return HealthResponse(
            status="healthy" if orchestrator.is_running else "stopped",
            mode=orchestrator.mode,
            timestamp=datetime.now(timezone.utc).isoformat()
        )

    @app.get("/status", response_model=StatusResponse)
    async def get_status():
        """Get current per-target status."""
        status = broker.get_status()
        targets = [
            TargetStatus(
                name=name,
                url=monitor.target.url,
                state=status["targets"].get(name, monitor.state.value),
                paused=monitor.is_paused,
                polls=monitor.polls,
                attempts_made=monitor.attempts_made,
                poll_interval=monitor.backoff.current_interval
            )
            for name, monitor in orchestrator.monitors.items()
        ]
        return StatusResponse(
            mode=orchestrator.mode,
            dry_run=orchestrator.dry_run,
            uptime_seconds=status["uptime_seconds"],
            targets=targets,
            last_attempts=status["last_attempts"]
        )

    @app.get("/events")
    async def events_stream():
        """SSE stream of structured JSON events."""
        async def event_generator():
            async for event in broker.subscribe():
                yield {
                    "event": event.type.value,
                    "data": event.to_json()
                }

        return EventSourceResponse(event_generator())

    @app.get("/history")
    async def get_event_history(limit: int = 50, target: Optional[str] = None):
        """Get recent event history."""
        events = await broker.get_history(limit, target=target)
        return [
            {
                "ts": e.ts,
                "type": e.type.value,
                "step": e.step,
                "target": e.target,
                "url": e.url,
                "details": e.details
            }
            for e in events
        ]

    @app.get("/attempts")
    async def get_attempts(target: Optional[str] = None):
        """Finished purchase attempts from the attempt log."""
        if target:
            return attempts_for(target, attempts_path)
        return load_attempts(attempts_path)

    @app.post("/actions/pause")
    async def pause_monitors(target: Optional[str] = None):
        """Pause polling for one target, or all."""
        monitors = _select(target)
        for monitor in monitors:
            monitor.pause()
        await broker.emit(
            EventType.STATE_CHANGE, "monitor_paused", target=target or "",
            targets=[m.name for m in monitors]
        )
        return {"status": "paused", "targets": [m.name for m in monitors]}

    @app.post("/actions/resume")
    async def resume_monitors(target: Optional[str] = None):
        """Resume polling for one target, or all."""
        monitors = _select(target)
        for monitor in monitors:
            monitor.resume()
        await broker.emit(
            EventType.STATE_CHANGE, "monitor_resumed", target=target or "",
            targets=[m.name for m in monitors]
        )
        return {"status": "resumed", "targets": [m.name for m in monitors]}

    @app.post("/actions/stop")
    async def stop_monitors(target: Optional[str] = None):
        """Stop one target's loop, or all. An in-flight attempt finishes its current step first."""
        monitors = _select(target)
        for monitor in monitors:
            monitor.stop()
        await broker.emit(
            EventType.STATE_CHANGE, "monitor_stop_requested", target=target or "",
            targets=[m.name for m in monitors]
        )
        return {"status": "stopping", "targets": [m.name for m in monitors]}

    return app


async def run_server(app: FastAPI, runtime: Orchestrator) -> int:
    server = uvicorn.Server(uvicorn.Config(
        app,
        host=config.API_HOST,
        port=config.API_PORT,
        log_level="info",
        access_log=True
    ))
    # Nothing left to serve once every monitor has ended
    runtime.on_finished = lambda: setattr(server, "should_exit", True)
    await server.serve()
    return runtime.exit_code


def main() -> None:
    try:
        targets = load_targets()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr, flush=True)
        sys.exit(EXIT_CONFIG)

    orchestrator = Orchestrator(targets)
    app = create_app(orchestrator)

    # uvicorn handles SIGINT/SIGTERM; its shutdown runs the lifespan, which stops the monitors
    sys.exit(asyncio.run(run_server(app, orchestrator)))


if __name__ == "__main__":
    main()
