"""Entry point for running autoforge.

This module provides the ``autoforge`` command line. It handles:
- Configuration loading
- Logging setup with secret sanitization
- Framework construction and lifecycle
- One-shot heal, test and deploy commands against an existing tree
- Signal handling for graceful shutdown
"""

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from autoforge._version import __version__
from autoforge.config.schema import FrameworkConfig
from autoforge.models.application import Application, AppSpecification
from autoforge.models.deployment import DeploymentStatus, Environment
from autoforge.utils.async_helpers import ConfigurationError

log = structlog.get_logger()

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130

SPEC_FILE = "app-spec.json"


def setup_logging(debug: bool = False, log_format: str = "console") -> None:
    """Configure structured logging with secret sanitization."""
    from autoforge.utils.logging import configure_logging

    configure_logging("DEBUG" if debug else "INFO", log_format)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="autoforge",
        description="Self-healing test and deployment orchestration for generated web applications",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=None,
        help="Path to YAML configuration file (default: environment variables only)",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--format",
        choices=["json", "console"],
        default="console",
        help="Log output format (default: console)",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("run", help="Start the framework and healing loop until interrupted")
    commands.add_parser("check", help="Validate configuration and exit")
    health = commands.add_parser("health", help="Run health checks and print the report")
    health.add_argument(
        "--output", type=Path, default=None, help="Also write the report to this JSON file"
    )

    for name, help_text in (
        ("heal", "Run one healing pass over an application tree"),
        ("test", "Run the configured test suites against an application tree"),
        ("deploy", "Test and deploy an application tree"),
    ):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("--app-dir", type=Path, required=True, help="Application root")
        if name == "deploy":
            command.add_argument(
                "--environment",
                choices=[e.value for e in Environment],
                default=Environment.DEVELOPMENT.value,
                help="Target environment (default: development)",
            )
            command.add_argument(
                "--skip-tests", action="store_true", help="Deploy without running tests first"
            )

    return parser.parse_args(argv)


def load_specification(app_dir: Path) -> AppSpecification:
    """Read ``app-spec.json`` from the tree, or fall back to an empty specification."""
    spec_path = app_dir / SPEC_FILE
    if spec_path.is_file():
        return AppSpecification.from_dict(json.loads(spec_path.read_text()))
    return AppSpecification(title=app_dir.absolute().name)


def emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def serve(config: FrameworkConfig) -> int:
    """Run the framework until SIGINT or SIGTERM."""
    from autoforge.core.framework import create_framework

    framework = await create_framework(config)
    shutdown = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, shutdown.set)
        log.debug("signal_handler_registered", signal=sig.name)

    await framework.start()
    try:
        await shutdown.wait()
        log.info("shutdown_requested")
    finally:
        await framework.stop()
    return EXIT_INTERRUPTED


async def run_once(config: FrameworkConfig, args: argparse.Namespace) -> int:
    """Register ``--app-dir`` and run one heal, test or deploy command on it."""
    from autoforge.core.framework import create_framework

    framework = await create_framework(config)
    framework.workspace.ensure()
    app: Application = await framework.register_app(
        args.app_dir.absolute().name,
        load_specification(args.app_dir),
        root=args.app_dir,
    )

    if args.command == "heal":
        report = await framework.heal(app.id)
        emit(report.to_dict())
        return EXIT_OK if not report.failed else EXIT_FAILURE

    if args.command == "test":
        suites = await framework.run_tests(app.id, heal_on_failure=False)
        emit([suite.to_dict() for suite in suites])
        return EXIT_OK if all(suite.passed for suite in suites) else EXIT_FAILURE

    record = await framework.deploy_app(
        app.id, Environment(args.environment), run_tests=not args.skip_tests
    )
    emit(record.to_dict())
    return EXIT_OK if record.status is DeploymentStatus.SUCCESS else EXIT_FAILURE


async def run(args: argparse.Namespace) -> int:
    """Load configuration and dispatch the selected command.

    Returns:
        Exit code
    """
    log.info("starting_autoforge", version=__version__, command=args.command)

    try:
        from autoforge.config.loader import load_config

        config = load_config(args.config)
    except FileNotFoundError as e:
        log.error("configuration_file_not_found", path=str(args.config), error=str(e))
        return EXIT_CONFIG
    except (ValidationError, ValueError) as e:
        log.error("configuration_invalid", error=str(e))
        return EXIT_CONFIG

    from autoforge.utils.logging import configure_logging

    configure_logging(
        "DEBUG" if args.debug else config.logging.level,
        args.format if args.format != "console" else config.logging.format,
        config.logging.file.path if config.logging.file.enabled else None,
    )

    if args.command == "check":
        log.info("configuration_valid")
        return EXIT_OK

    if args.command == "health":
        from autoforge.utils.health import HealthChecker, write_health_file

        report = await HealthChecker(config).run_all_checks()
        emit(report.to_dict())
        if args.output is not None:
            await write_health_file(report, args.output)
        return EXIT_OK if report.status == "healthy" else EXIT_FAILURE

    try:
        if args.command == "run":
            return await serve(config)
        return await run_once(config, args)
    except ConfigurationError as e:
        log.error("configuration_error", error=str(e))
        return EXIT_CONFIG
    except Exception as e:
        log.exception("fatal_error", error=str(e))
        return EXIT_FAILURE


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    setup_logging(debug=args.debug, log_format=args.format)

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        log.info("shutting_down_gracefully")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
