"""
One running engine session.

An :class:`EngineInstance` launches the hosting browser, loads the applet and
mediates every command, introspection call and export against it.  The engine
is single-threaded and mutates shared construction state, so all page calls
go through one lock per instance; a job that needs the instance for longer
than a single call (the frame-capture sweep) holds it via :meth:`exclusive`.

State machine::

    UNINITIALIZED -> LAUNCHING -> READY <-> BUSY
                          |          |
                          +--------> CLOSED

Introspection (``exists``, ``is_defined``, ``get_object_info`` ...) is not
reliable when the engine runs headless: it can report nothing for objects that
do exist.  Those calls are best-effort and their negative answers must never
gate correctness-critical logic.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from ..config import InstanceConfig, TimeoutConfig
from ..errors import CommandError, ConnectionError, ExportError
from . import scripts
from .applet import render_applet_html
from .browser import BrowserHandle, BrowserLauncher, launch_chromium
from .bundle import load_bundle

LOG = logging.getLogger(__name__)

DATA_URL_PREFIX = "data:image/png;base64,"

BundleLoader = Callable[[str, Optional[Path]], Awaitable[Optional[str]]]


class InstanceState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LAUNCHING = "launching"
    READY = "ready"
    BUSY = "busy"
    CLOSED = "closed"


@dataclass(frozen=True)
class CommandResult:
    """
    Outcome of one textual command.

    Build it through :meth:`ok` or :meth:`failed`; a result never carries both
    a return value and an error.
    """

    command: str
    success: bool
    result: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, command: str, result: Any = None) -> "CommandResult":
        return cls(command=command, success=True, result=result, error=None)

    @classmethod
    def failed(cls, command: str, error: str) -> "CommandResult":
        message = str(error or "").strip() or "Command failed"
        return cls(command=command, success=False, result=None, error=message)

    def to_dict(self) -> dict:
        if self.success:
            return {"success": True, "result": self.result}
        return {"success": False, "error": self.error, "command": self.command}

    def raise_for_error(self) -> "CommandResult":
        if not self.success:
            raise CommandError(self.error or "Command failed", self.command)
        return self


@dataclass
class ObjectInfo:
    name: str
    type: Optional[str] = None
    value: Optional[float] = None
    value_string: Optional[str] = None
    visible: Optional[bool] = None
    defined: Optional[bool] = None
    x: Optional[float] = None
    y: Optional[float] = None
    z: Optional[float] = None
    color: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ObjectInfo":
        return cls(
            name=str(payload.get("name")),
            type=payload.get("type"),
            value=payload.get("value"),
            value_string=payload.get("valueString"),
            visible=payload.get("visible"),
            defined=payload.get("defined"),
            x=payload.get("x"),
            y=payload.get("y"),
            z=payload.get("z"),
            color=payload.get("color"),
        )

    def to_dict(self) -> dict:
        return asdict(self)


def placeholder_svg(width: int, height: int) -> str:
    return (
        f'<svg xmlns="http://www.w3.org/2000/svg" width="{int(width)}" height="{int(height)}">'
        '<text x="10" y="30">Construction (vector export not available)</text></svg>'
    )


def compute_effective_scale(
    scale: float,
    width: Optional[int],
    height: Optional[int],
    canvas: Tuple[float, float],
) -> float:
    """
    Scale that makes the current canvas fit the requested output size.
    """

    canvas_width = float(canvas[0]) if canvas and canvas[0] else 0.0
    canvas_height = float(canvas[1]) if canvas and canvas[1] else 0.0
    ratios = []
    if width is not None and canvas_width > 0:
        ratios.append(float(width) / canvas_width)
    if height is not None and canvas_height > 0:
        ratios.append(float(height) / canvas_height)
    if not ratios:
        return float(scale)
    return min(ratios)


def _format_call(method: str, args: Sequence[Any]) -> str:
    return f"{method}({', '.join(repr(arg) for arg in args)})"


class EngineInstance:
    """
    Owns one hosting browser and the applet running inside it.
    """

    def __init__(
        self,
        config: Optional[InstanceConfig] = None,
        *,
        timeouts: Optional[TimeoutConfig] = None,
        launcher: BrowserLauncher = launch_chromium,
        bundle_loader: Optional[BundleLoader] = load_bundle,
        bundle_cache_dir: Optional[Path] = None,
        instance_id: Optional[str] = None,
    ) -> None:
        self.id = instance_id or uuid.uuid4().hex
        self.config = config or InstanceConfig()
        self.state = InstanceState.UNINITIALIZED
        self.created_at = time.monotonic()
        self.last_activity = self.created_at
        self._timeouts = timeouts or TimeoutConfig()
        self._launcher = launcher
        self._bundle_loader = bundle_loader
        self._bundle_cache_dir = bundle_cache_dir
        self._handle: Optional[BrowserHandle] = None
        self._lock = asyncio.Lock()
        self._holder: Optional["asyncio.Task[Any]"] = None
        self._handshake_reason = "readiness signal not raised"
        self._log = LOG.getChild(self.id[:8])

    # ------------------------------------------------------------------ state

    @property
    def is_ready(self) -> bool:
        return self.state in (InstanceState.READY, InstanceState.BUSY)

    @property
    def is_closed(self) -> bool:
        return self.state is InstanceState.CLOSED

    @property
    def is_locked(self) -> bool:
        return self._lock.locked()

    def idle_seconds(self, now: Optional[float] = None) -> float:
        current = time.monotonic() if now is None else now
        return max(0.0, current - self.last_activity)

    def describe(self) -> dict:
        return {
            "id": self.id,
            "state": self.state.value,
            "ready": self.is_ready,
            "idleSeconds": round(self.idle_seconds(), 3),
            "config": asdict(self.config),
        }

    def _touch(self) -> None:
        self.last_activity = time.monotonic()

    def _ensure_ready(self) -> None:
        if not self.is_ready or self._handle is None:
            raise ConnectionError(
                f"Engine instance {self.id} not initialized (state={self.state.value})"
            )

    # -------------------------------------------------------------- lifecycle

    async def initialize(
        self,
        headless: Optional[bool] = None,
        browser_args: Optional[List[str]] = None,
    ) -> None:
        """
        Launch the hosting runtime and wait for a usable engine.

        Either the instance ends up READY within the startup timeout or the
        partially launched runtime is torn down and :class:`ConnectionError`
        is raised.
        """

        if self.is_ready:
            return
        if self.state is InstanceState.LAUNCHING:
            raise ConnectionError(f"Engine instance {self.id} is already initializing")

        use_headless = self.config.headless if headless is None else bool(headless)
        args = list(self.config.browser_args)
        for extra in browser_args or []:
            if extra not in args:
                args.append(extra)

        self.state = InstanceState.LAUNCHING
        self._handshake_reason = "readiness signal not raised"
        self._log.info("Initializing engine instance (headless=%s)", use_headless)
        started = time.monotonic()
        try:
            await asyncio.wait_for(
                self._launch(use_headless, args),
                timeout=self._timeouts.startup,
            )
        except asyncio.CancelledError:
            await self._abort_launch()
            raise
        except asyncio.TimeoutError:
            await self._log_debug_state()
            await self._abort_launch()
            raise ConnectionError(
                f"Engine instance {self.id} did not become ready within "
                f"{self._timeouts.startup:g}s: {self._handshake_reason}"
            ) from None
        except ConnectionError:
            await self._abort_launch()
            raise
        except Exception as exc:
            self._log.exception("Engine instance failed to launch")
            await self._abort_launch()
            raise ConnectionError(f"Failed to initialize engine instance {self.id}: {exc}") from exc

        self.state = InstanceState.READY
        self._touch()
        self._log.info("Engine instance ready after %.2fs", time.monotonic() - started)

    async def _launch(self, headless: bool, args: List[str]) -> None:
        bundle_source: Optional[str] = None
        if self._bundle_loader is not None:
            bundle_source = await self._bundle_loader(self.config.bundle_url, self._bundle_cache_dir)

        self._handle = await self._launcher(self.config, headless=headless, args=args)
        page = self._handle.page
        await page.set_content(render_applet_html(self.config, bundle_source))
        await self._handshake(page)

    async def _handshake(self, page: Any) -> None:
        """
        Poll until the readiness signal is up *and* the scripting surface
        answers a real command.  Some engine builds raise the flag before
        their entry points are wired, so the flag alone is not enough.
        """

        poll = max(0.01, float(self._timeouts.handshake_poll))
        while True:
            try:
                signalled = bool(await page.evaluate(scripts.READY_SIGNAL))
            except Exception as exc:
                signalled = False
                self._handshake_reason = f"readiness check failed: {exc}"
            if signalled:
                try:
                    probe = await page.evaluate(scripts.FUNCTIONAL_PROBE)
                except Exception as exc:
                    probe = {"ok": False, "reason": str(exc)}
                if isinstance(probe, dict) and probe.get("ok"):
                    self._log.debug("Functional probe passed (%s)", probe)
                    return
                reason = probe.get("reason") if isinstance(probe, dict) else probe
                self._handshake_reason = f"readiness signal raised but probe failed: {reason}"
            await asyncio.sleep(poll)

    async def _log_debug_state(self) -> None:
        handle = self._handle
        if handle is None:
            return
        try:
            state = await asyncio.wait_for(handle.page.evaluate(scripts.DEBUG_STATE), timeout=2.0)
        except Exception:  # pragma: no cover - defensive
            self._log.debug("Unable to read page state after failed handshake.", exc_info=True)
            return
        self._log.error("Engine handshake failed; page state: %s", state)

    async def _abort_launch(self) -> None:
        await self.cleanup()

    async def cleanup(self) -> None:
        """
        Close the page, then the browser process.

        A failure releasing one resource is logged and never prevents the
        other release.  Safe to call repeatedly; the instance always ends up
        CLOSED.
        """

        handle, self._handle = self._handle, None
        self.state = InstanceState.CLOSED
        if handle is None:
            return

        self._log.debug("Cleaning up engine instance")
        try:
            await handle.close_page()
        except Exception:
            self._log.exception("Error closing page")
        try:
            await handle.close_browser()
        except Exception:
            self._log.exception("Error closing browser")
        self._log.info("Engine instance closed")

    # ------------------------------------------------------------ serialisation

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator["EngineInstance"]:
        """
        Hold the instance for a multi-call job.

        Operations issued by the holding task inside the block run without
        re-acquiring; everyone else queues until the block exits.
        """

        self._ensure_ready()
        current = asyncio.current_task()
        if self._holder is not None and self._holder is current:
            yield self
            return

        await self._lock.acquire()
        try:
            self._ensure_ready()
            self._holder = current
            yield self
        finally:
            self._holder = None
            self._lock.release()

    @asynccontextmanager
    async def _operation(self) -> AsyncIterator[Any]:
        self._ensure_ready()
        owned = self._holder is not None and self._holder is asyncio.current_task()
        if not owned:
            await self._lock.acquire()
        try:
            # the instance may have been closed while this call was queued
            self._ensure_ready()
            handle = self._handle
            if handle is None:
                raise ConnectionError(f"Engine instance {self.id} has no browser page")
            self.state = InstanceState.BUSY
            self._touch()
            try:
                yield handle.page
            finally:
                if self.state is InstanceState.BUSY:
                    self.state = InstanceState.READY
                self._touch()
        finally:
            if not owned:
                self._lock.release()

    async def _evaluate(self, page: Any, script: str, arg: Any = None, *, timeout: float) -> Any:
        try:
            return await asyncio.wait_for(page.evaluate(script, arg), timeout=timeout)
        except asyncio.TimeoutError:
            raise
        except Exception as exc:
            if self.is_closed:
                raise ConnectionError(
                    f"Engine instance {self.id} was closed while an operation was in flight"
                ) from exc
            raise

    # --------------------------------------------------------------- commands

    async def eval_command(self, command: str) -> CommandResult:
        """
        Send one textual command.

        Rejections come back as a failed :class:`CommandResult` carrying the
        command text; they do not disturb the instance, which stays READY.
        """

        async with self._operation() as page:
            self._log.debug("Executing command: %s", command)
            try:
                payload = await self._evaluate(
                    page, scripts.EVAL_COMMAND, command, timeout=self._timeouts.command
                )
            except ConnectionError:
                raise
            except asyncio.TimeoutError:
                result = CommandResult.failed(
                    command, f"Command timed out after {self._timeouts.command:g}s"
                )
            except Exception as exc:
                result = CommandResult.failed(command, str(exc))
            else:
                result = self._to_command_result(command, payload)

        if result.success:
            self._log.debug("Command succeeded: %s", command)
        else:
            self._log.warning("Command failed: %s (%s)", command, result.error)
        return result

    @staticmethod
    def _to_command_result(command: str, payload: Any) -> CommandResult:
        if not isinstance(payload, dict):
            return CommandResult.failed(command, f"Malformed engine response: {payload!r}")
        if payload.get("success"):
            return CommandResult.ok(command, payload.get("result"))
        return CommandResult.failed(command, payload.get("error") or "Command failed")

    async def eval_command_get_labels(self, command: str) -> List[str]:
        async with self._operation() as page:
            try:
                labels = await self._evaluate(
                    page, scripts.EVAL_COMMAND_GET_LABELS, command, timeout=self._timeouts.command
                )
            except ConnectionError:
                raise
            except asyncio.TimeoutError:
                raise CommandError(
                    f"Command timed out after {self._timeouts.command:g}s", command
                ) from None
            except Exception as exc:
                raise CommandError(f"Failed to execute command: {exc}", command) from exc
        if labels is None:
            raise CommandError("Command rejected by engine", command)
        return [str(label) for label in labels]

    async def _call(self, method: str, *args: Any) -> Any:
        description = _format_call(method, args)
        async with self._operation() as page:
            try:
                return await self._evaluate(
                    page, scripts.CALL_METHOD, [method, list(args)], timeout=self._timeouts.command
                )
            except ConnectionError:
                raise
            except asyncio.TimeoutError:
                raise CommandError(
                    f"{method} timed out after {self._timeouts.command:g}s", description
                ) from None
            except Exception as exc:
                self._log.error("Engine call failed: %s (%s)", description, exc)
                raise CommandError(f"{method} failed: {exc}", description) from exc

    async def _introspect(self, method: str, *args: Any, default: Any = None) -> Any:
        try:
            value = await self._call(method, *args)
        except CommandError as exc:
            self._log.debug("Introspection %s gave no answer: %s", exc.command, exc)
            return default
        return default if value is None else value

    # ----------------------------------------------------------- introspection

    async def exists(self, name: str) -> bool:
        return bool(await self._introspect("exists", name, default=False))

    async def is_defined(self, name: str) -> bool:
        return bool(await self._introspect("isDefined", name, default=False))

    async def get_all_object_names(self, object_type: Optional[str] = None) -> List[str]:
        args = [object_type] if object_type else []
        names = await self._introspect("getAllObjectNames", *args, default=[])
        return [str(name) for name in names] if isinstance(names, list) else []

    async def get_value(self, name: str) -> Optional[float]:
        value = await self._introspect("getValue", name)
        try:
            return float(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    async def get_value_string(self, name: str) -> str:
        return str(await self._introspect("getValueString", name, default=""))

    async def get_object_info(self, name: str) -> Optional[ObjectInfo]:
        async with self._operation() as page:
            try:
                payload = await self._evaluate(
                    page, scripts.OBJECT_INFO, name, timeout=self._timeouts.command
                )
            except ConnectionError:
                raise
            except Exception as exc:
                self._log.debug("Object info for %s unavailable: %s", name, exc)
                return None
        if not isinstance(payload, dict):
            return None
        return ObjectInfo.from_payload(payload)

    # ------------------------------------------------------------- mutations

    async def delete_object(self, name: str) -> bool:
        try:
            await self._call("deleteObject", name)
        except CommandError:
            return False
        return True

    async def set_value(self, name: str, value: float) -> None:
        await self._call("setValue", name, float(value))

    async def set_animating(self, name: str, animate: bool) -> None:
        await self._call("setAnimating", name, bool(animate))

    async def set_animation_speed(self, name: str, speed: float) -> None:
        await self._call("setAnimationSpeed", name, float(speed))

    async def start_animation(self) -> None:
        await self._call("startAnimation")

    async def stop_animation(self) -> None:
        await self._call("stopAnimation")

    async def is_animation_running(self) -> bool:
        return bool(await self._call("isAnimationRunning"))

    async def set_trace(self, name: str, flag: bool) -> None:
        await self._call("setTrace", name, bool(flag))

    async def new_construction(self) -> None:
        await self._call("newConstruction")

    async def reset(self) -> None:
        await self._call("reset")

    async def refresh_views(self) -> None:
        await self._call("refreshViews")

    async def set_coord_system(self, xmin: float, xmax: float, ymin: float, ymax: float) -> None:
        await self._call("setCoordSystem", float(xmin), float(xmax), float(ymin), float(ymax))

    async def set_axes_visible(self, x_axis: bool, y_axis: bool) -> None:
        await self._call("setAxesVisible", bool(x_axis), bool(y_axis))

    async def set_grid_visible(self, visible: bool) -> None:
        await self._call("setGridVisible", bool(visible))

    async def is_ready_live(self) -> bool:
        """Ask the page itself whether the engine still answers."""
        if not self.is_ready:
            return False
        try:
            async with self._operation() as page:
                return bool(
                    await self._evaluate(page, scripts.READY_SIGNAL, timeout=self._timeouts.command)
                )
        except Exception:
            self._log.debug("Live readiness check failed.", exc_info=True)
            return False

    # --------------------------------------------------------------- exports

    async def export_raster(
        self,
        scale: float = 1.0,
        transparent: bool = False,
        dpi: int = 72,
        width: Optional[int] = None,
        height: Optional[int] = None,
    ) -> str:
        """
        Export the graphics view as base64 PNG.

        With an explicit ``width``/``height`` the scale is derived from the
        current canvas size (the configured viewport when the engine does not
        report one).
        """

        async with self._operation() as page:
            try:
                effective_scale = float(scale)
                if width is not None or height is not None:
                    canvas = await self._evaluate(
                        page,
                        scripts.CANVAS_SIZE,
                        [self.config.width, self.config.height],
                        timeout=self._timeouts.command,
                    )
                    effective_scale = compute_effective_scale(scale, width, height, tuple(canvas or ()))
                payload = await self._evaluate(
                    page,
                    scripts.EXPORT_RASTER,
                    {"scale": effective_scale, "transparent": bool(transparent), "dpi": int(dpi)},
                    timeout=self._timeouts.export,
                )
            except ConnectionError:
                raise
            except asyncio.TimeoutError:
                raise ExportError(f"PNG export timed out after {self._timeouts.export:g}s") from None
            except Exception as exc:
                self._log.error("PNG export failed: %s", exc)
                raise ExportError(f"Failed to export PNG: {exc}") from exc

        data = payload.get("data") if isinstance(payload, dict) else None
        if not data or not isinstance(data, str):
            errors = payload.get("errors") if isinstance(payload, dict) else payload
            raise ExportError(f"PNG export returned no data: {errors}")
        if data.startswith(DATA_URL_PREFIX):
            data = data[len(DATA_URL_PREFIX):]
        try:
            base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ExportError("PNG export did not return valid base64") from exc

        self._log.debug(
            "PNG exported (scale=%s, transparent=%s, dpi=%s, size=%sx%s)",
            effective_scale,
            transparent,
            dpi,
            width,
            height,
        )
        return data

    async def export_vector(self) -> str:
        async with self._operation() as page:
            try:
                svg = await self._evaluate(page, scripts.EXPORT_VECTOR, timeout=self._timeouts.export)
            except ConnectionError:
                raise
            except asyncio.TimeoutError:
                raise ExportError(f"SVG export timed out after {self._timeouts.export:g}s") from None
            except Exception as exc:
                raise ExportError(f"Failed to export SVG: {exc}") from exc

        if not isinstance(svg, str) or ("<svg" not in svg and "<?xml" not in svg):
            self._log.warning("Engine returned no SVG; substituting placeholder.")
            return placeholder_svg(self.config.width, self.config.height)
        return svg

    async def export_pdf(self) -> str:
        """Print the host page to PDF and return it base64 encoded."""
        async with self._operation() as page:
            try:
                pdf = await asyncio.wait_for(
                    page.pdf(
                        format="A4",
                        print_background=True,
                        margin={"top": "0.5in", "bottom": "0.5in", "left": "0.5in", "right": "0.5in"},
                    ),
                    timeout=self._timeouts.export,
                )
            except asyncio.TimeoutError:
                raise ExportError(f"PDF export timed out after {self._timeouts.export:g}s") from None
            except Exception as exc:
                if self.is_closed:
                    raise ConnectionError(f"Engine instance {self.id} was closed during PDF export") from exc
                raise ExportError(f"Failed to export PDF: {exc}") from exc
        return base64.b64encode(pdf).decode("ascii")


__all__ = [
    "CommandResult",
    "EngineInstance",
    "InstanceState",
    "ObjectInfo",
    "compute_effective_scale",
    "placeholder_svg",
]
