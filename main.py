"""
CAFCOOP Session Bootstrap Entry Point.

Bootstraps the dependency graph via constructor injection, reconciles the
persisted provider session with its application profile, prints the
resulting controller state as JSON and shuts down.  Every subsystem is
wired here; there are no module-level globals.

Usage::

    python main.py
"""

from __future__ import annotations

import asyncio
import json
import sys
import traceback

from cafcoop.config import get_config
from cafcoop.gateway import ProviderGateway
from cafcoop.logger import StructuredLogger, get_logger
from cafcoop.models.session import ControllerState
from cafcoop.services import create_services
from cafcoop.telemetry import Telemetry


def _render_state(state: ControllerState) -> str:
    return json.dumps(
        {
            "phase": state.phase,
            "loading": state.loading,
            "error": state.error,
            "user": state.user.model_dump() if state.user else None,
            "profile": state.profile.model_dump(mode="json", by_alias=True) if state.profile else None,
            "needs_profile_completion": state.needs_profile_completion,
        },
        ensure_ascii=False,
        indent=2,
    )


async def run() -> ControllerState:
    """Wire dependencies, initialize the session controller, return its state."""
    root_logger: StructuredLogger = get_logger("cafcoop")
    logger = root_logger.child("main")
    logger.info("Starting CAFCOOP session bootstrap...")

    # ------------------------------------------------------------------
    # 1. Configuration (from .env / environment variables)
    # ------------------------------------------------------------------
    config = get_config()

    # ------------------------------------------------------------------
    # 2. Provider Gateway (client-side, anon key, lazily connected)
    # ------------------------------------------------------------------
    gateway = ProviderGateway.from_config(config, logger=root_logger.child("gateway"))

    # ------------------------------------------------------------------
    # 3. Telemetry + Service Container (single composition root)
    # ------------------------------------------------------------------
    telemetry = Telemetry(
        logger=root_logger.child("telemetry"),
        buffer_size=config.TELEMETRY_BUFFER_SIZE,
        slow_threshold_s=config.SLOW_OPERATION_THRESHOLD_S,
    )
    services = create_services(gateway=gateway, config=config, telemetry=telemetry)
    controller = services["session_controller"]

    # ------------------------------------------------------------------
    # 4. Reconcile session and profile, then tear down
    # ------------------------------------------------------------------
    settled = asyncio.Event()
    unsubscribe = controller.subscribe(
        lambda state: settled.set() if not state.loading else None,
    )
    try:
        await controller.initialize()
        if controller.state.loading:
            await asyncio.wait_for(settled.wait(), timeout=config.INIT_SAFETY_TIMEOUT_S)
        return controller.state
    except asyncio.TimeoutError:
        logger.warning("Session state still loading after %ss.", config.INIT_SAFETY_TIMEOUT_S)
        return controller.state
    finally:
        unsubscribe()
        controller.close()
        logger.info("CAFCOOP session bootstrap shut down.")


def main() -> None:
    """Application entry point."""
    state = asyncio.run(run())
    sys.stdout.write(_render_state(state) + "\n")


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        pass
    except Exception as exc:
        detail = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        sys.stderr.write(f"FATAL: {type(exc).__name__}: {exc}\n{detail}")
        sys.exit(1)
