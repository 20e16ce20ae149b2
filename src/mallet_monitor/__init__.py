"""Command-line entry point for the TechPolo mallet monitor."""

from __future__ import annotations

import argparse
import logging
import sys

from .gatt import DEVICE_NAME
from .runtime import MonitorConfig, MonitorRuntime, run_headless
from .session import DiscoveryPolicy, ReconnectPolicy
from .telemetry import DEFAULT_CAPACITY

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mallet-monitor",
        description=(
            "Connect to the TechPolo mallet over BLE and chart its X/Y/Z "
            "acceleration and force live in the browser, or stream them as CSV."
        ),
    )
    parser.add_argument(
        "--address", help="BLE address/identifier to connect to directly (skips scanning)"
    )
    parser.add_argument(
        "--device-name",
        default=DEVICE_NAME,
        help=f"Exact advertised name to auto-connect to (default: {DEVICE_NAME})",
    )
    parser.add_argument(
        "--policy",
        choices=[p.value for p in DiscoveryPolicy],
        default=DiscoveryPolicy.AUTO_CONNECT.value,
        help="auto: connect to the first name match; manual: pick from the scan list",
    )
    parser.add_argument(
        "--buffer-size",
        type=int,
        default=DEFAULT_CAPACITY,
        help=f"Samples shown per channel (default: {DEFAULT_CAPACITY})",
    )
    parser.add_argument(
        "--max-reconnect-attempts",
        type=int,
        default=5,
        help="Reconnect attempts after an unexpected disconnect, 0 disables (default: 5)",
    )
    parser.add_argument(
        "--reconnect-delay",
        type=float,
        default=1.0,
        help="Delay before the first reconnect attempt in seconds (default: 1.0)",
    )
    parser.add_argument(
        "--reconnect-max-delay",
        type=float,
        default=30.0,
        help="Upper bound of the reconnect backoff in seconds (default: 30.0)",
    )
    parser.add_argument(
        "--connect-timeout",
        type=float,
        default=20.0,
        help="Timeout of a single connection attempt in seconds (default: 20.0)",
    )
    parser.add_argument(
        "--fake-data",
        action="store_true",
        help="Feed X/Y/Z charts with random values once per second (UI prototyping)",
    )
    parser.add_argument(
        "--mock",
        action="store_true",
        help="Use a simulated mallet instead of the Bluetooth adapter",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"],
        help="Logging level (default: WARNING)",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also write logs to this file (default: stderr only)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8050,
        help="Dashboard server port (default: 8050)",
    )
    parser.add_argument(
        "--update-rate",
        type=int,
        default=5,
        help="Dashboard refresh rate in frames per second (default: 5)",
    )

    # Headless CSV mode (default is the dashboard)
    parser.add_argument(
        "--csv",
        action="store_true",
        help="Stream decoded samples as CSV to stdout instead of serving the dashboard",
    )
    parser.add_argument(
        "--no-header",
        action="store_true",
        help="Omit the CSV header row (CSV mode only)",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> MonitorConfig:
    return MonitorConfig(
        device_name=args.device_name,
        address=args.address,
        policy=DiscoveryPolicy(args.policy),
        buffer_size=args.buffer_size,
        reconnect=ReconnectPolicy(
            max_attempts=max(0, args.max_reconnect_attempts),
            base_delay=args.reconnect_delay,
            max_delay=args.reconnect_max_delay,
        ),
        connect_timeout=args.connect_timeout,
        fake_data=args.fake_data,
        mock=args.mock,
    )


def configure_logging(level_name: str, log_file: str | None) -> None:
    # stdout carries CSV output, so logs go to stderr and optionally a file
    level = getattr(logging, str(level_name).upper(), logging.WARNING)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as e:
            print(f"Cannot open log file {log_file}: {e}", file=sys.stderr)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )


def main() -> None:
    args = build_parser().parse_args()
    configure_logging(args.log_level, args.log_file)

    if args.buffer_size < 1:
        logger.error("--buffer-size must be at least 1")
        raise SystemExit(2)

    config = config_from_args(args)

    if args.csv:
        raise SystemExit(run_headless(config, show_header=not args.no_header))

    from .oscilloscope import create_app

    logger.info("🔧 TechPolo Mallet Monitor")
    logger.info("=" * 50)
    if config.mock:
        logger.info("🔧 Using simulated mallet (no BLE device required)")
    elif config.address:
        logger.info(f"🔍 Connecting to specific BLE address: {config.address}")
    else:
        logger.info(f"💡 Press Connect to scan for '{config.device_name}'")
    logger.info(f"🔍 Open http://localhost:{args.port} in your browser")
    logger.info("=" * 50)

    runtime = MonitorRuntime(config)
    try:
        app = create_app(runtime, update_rate=args.update_rate)
        app.run(host="0.0.0.0", port=args.port)
    except KeyboardInterrupt:
        logger.info("🛑 Shutting down dashboard...")
    except Exception as e:
        logger.error(f"❌ Failed to start dashboard: {e}")
        raise SystemExit(1)
    finally:
        runtime.stop()
        logger.info("🏁 Dashboard stopped")
