#!/usr/bin/env python3
"""
Detour Processor Service - Entry Point
========================================

This script starts the DetourProcessorService, which:
- Polls vehicle positions on an interval
- Detects buses leaving their canonical route shape
- Tracks each route's detour through its lifecycle
- Publishes detour documents and DETOUR_* events to MQTT
- Responds to control commands via MQTT control plane

Usage:
    python run_detour_processor.py --config config/detour_processor.yaml

Architecture:
    - DetourProcessorService: Main orchestrator (detour_processor)
    - MQTTControlPlane: Command handler (detour_control)
    - DetourEventPublisher: Publishes detour events (detour_mqtt)
    - JSON file feeds / in-memory stores: data collaborators

Lifecycle:
    1. Load configuration from YAML
    2. Setup logging (console + file)
    3. Create collaborators, control plane and event publisher
    4. Create DetourProcessorService
    5. Setup (restore stored detours, register commands)
    6. Start service (non-blocking)
    7. Wait for stop signal (Ctrl+C or SIGTERM)
    8. Graceful shutdown

Signals:
    - SIGTERM: Graceful shutdown
    - SIGINT (Ctrl+C): Graceful shutdown
"""

import argparse
import signal
import sys
import logging
from pathlib import Path
from typing import Optional

from detour_control import MQTTControlPlane
from detour_mqtt import DetourEventPublisher, create_logger
from detour_processor import DetourProcessorService
from detour_processor.collaborators import (
    CollectingEventSink,
    InMemoryAlertFeed,
    InMemoryDetourStore,
    InMemoryPositionFeed,
    InMemoryShapeStore,
    InMemoryStopStore,
    JsonFileAlertFeed,
    JsonFilePositionFeed,
)
from detour_processor.config import DetourConfig


# ─────────────────────────────────────────────────────────────────────────────
# Logging Setup
# ─────────────────────────────────────────────────────────────────────────────

def setup_logging(log_file: Optional[Path] = None) -> logging.Logger:
    """
    Setup logging for the processor service.

    Args:
        log_file: Optional path to log file (default: logs/detour_processor.log)

    Returns:
        Logger instance for the processor
    """
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
            *(
                [logging.FileHandler(log_file)]
                if log_file
                else []
            )
        ]
    )

    return logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Main Service
# ─────────────────────────────────────────────────────────────────────────────

class ProcessorApp:
    """
    Main application wrapper for DetourProcessorService.

    Handles:
    - Configuration loading
    - Component initialization (collaborators, control plane, publisher)
    - Signal handling (SIGTERM, SIGINT)
    - Graceful shutdown
    """

    def __init__(self, config_path: Path, log_file: Optional[Path] = None):
        self.config_path = config_path
        self.log_file = log_file
        self.logger = setup_logging(log_file)

        # Components (initialized in setup())
        self.config: Optional[DetourConfig] = None
        self.control_plane: Optional[MQTTControlPlane] = None
        self.event_publisher: Optional[DetourEventPublisher] = None
        self.service: Optional[DetourProcessorService] = None

        self._shutdown_requested = False

    def _build_collaborators(self):
        sources = self.config.data_sources

        if sources.positions_file:
            position_feed = JsonFilePositionFeed(sources.positions_file)
            self.logger.info(f"  - Positions: {sources.positions_file}")
        else:
            position_feed = InMemoryPositionFeed()
            self.logger.warning("⚠️  No positions_file configured, feed is empty")

        if sources.shapes_file:
            shape_store = InMemoryShapeStore.from_json_file(sources.shapes_file)
            self.logger.info(f"  - Shapes: {len(shape_store.route_ids())} routes from {sources.shapes_file}")
        else:
            shape_store = InMemoryShapeStore()

        stop_store = InMemoryStopStore.from_json_file(sources.stops_file) if sources.stops_file else None
        alert_feed = JsonFileAlertFeed(sources.alerts_file) if sources.alerts_file else InMemoryAlertFeed()

        return position_feed, shape_store, stop_store, alert_feed

    def setup(self):
        """
        Setup all components.

        Steps:
        1. Load configuration from YAML
        2. Create data collaborators
        3. Create control plane and event publisher (when MQTT is configured)
        4. Create DetourProcessorService
        5. Restore stored detours
        """
        self.logger.info("=" * 80)
        self.logger.info("🚀 Detour Processor - Starting")
        self.logger.info("=" * 80)

        # 1. Load configuration
        self.logger.info(f"📄 Loading configuration: {self.config_path}")
        self.config = DetourConfig.from_yaml(self.config_path)
        self.logger.info(f"✅ Configuration loaded (service_id={self.config.service_id})")

        # 2. Collaborators
        self.logger.info("📦 Creating data collaborators")
        position_feed, shape_store, stop_store, alert_feed = self._build_collaborators()

        # 3. Transport
        mqtt_config = self.config.mqtt_config
        if mqtt_config is not None:
            topics = mqtt_config.topics(self.config.service_id)

            self.logger.info("🔌 Creating MQTT control plane")
            self.control_plane = MQTTControlPlane(
                broker_host=mqtt_config.broker,
                broker_port=mqtt_config.port,
                command_topic=topics["commands"],
                status_topic=topics["status"],
                client_id=f"detour_processor_{self.config.service_id}",
                username=mqtt_config.username,
                password=mqtt_config.password,
            )

            self.logger.info("📤 Creating detour event publisher")
            self.event_publisher = DetourEventPublisher(
                broker_host=mqtt_config.broker,
                broker_port=mqtt_config.port,
                topic=topics["events"],
                logger=create_logger(component="detour_publisher"),
                client_id=f"publisher_detours_{self.config.service_id}",
                username=mqtt_config.username,
                password=mqtt_config.password,
                qos=mqtt_config.qos,
            )
            event_sink = self.event_publisher
            self.logger.info(f"  - Event topic: {topics['events']}/<route_id>")
            self.logger.info(f"  - Command topic: {topics['commands']}")
        else:
            self.logger.warning("⚠️  No mqtt_config, events are kept in memory only")
            event_sink = CollectingEventSink()

        # 4. Service
        self.logger.info("🏗️  Creating detour processor service")
        self.service = DetourProcessorService(
            config=self.config,
            position_feed=position_feed,
            shape_store=shape_store,
            detour_store=InMemoryDetourStore(),
            event_sink=event_sink,
            alert_feed=alert_feed,
            stop_store=stop_store,
            control_plane=self.control_plane,
        )

        # 5. Restore
        self.service.setup()
        self.logger.info("✅ Service setup complete")
        self.logger.info("=" * 80)

    def run(self):
        """
        Run the processor service.

        Blocks until shutdown is requested (via signal or exception).
        """
        if not self.service:
            raise RuntimeError("Service not initialized. Call setup() first.")

        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

        try:
            self.service.start()

            self.logger.info("✅ Service started successfully")
            self.logger.info("Press Ctrl+C to stop")
            self.logger.info("=" * 80)

            self.service.wait()

        except KeyboardInterrupt:
            self.logger.info("\n⚠️  KeyboardInterrupt received")
            self.shutdown()

        except Exception as e:
            self.logger.error(f"❌ Service error: {e}", exc_info=True)
            self.shutdown()
            sys.exit(1)

    def shutdown(self):
        """
        Graceful shutdown.

        The service disconnects the event publisher and the control plane.
        """
        if self._shutdown_requested:
            self.logger.warning("⚠️  Shutdown already in progress")
            return

        self._shutdown_requested = True

        self.logger.info("=" * 80)
        self.logger.info("🛑 Shutting down detour processor")
        self.logger.info("=" * 80)

        if self.service:
            try:
                self.service.stop()
                self.logger.info("✅ Service stopped")
            except Exception as e:
                self.logger.error(f"❌ Error stopping service: {e}")

        self.logger.info("✅ Shutdown complete")

    def _signal_handler(self, signum, frame):
        signal_name = signal.Signals(signum).name
        self.logger.info(f"\n⚠️  Received signal {signal_name} ({signum})")
        self.shutdown()
        sys.exit(0)


# ─────────────────────────────────────────────────────────────────────────────
# CLI
# ─────────────────────────────────────────────────────────────────────────────

def parse_args():
    parser = argparse.ArgumentParser(
        description="Detour Processor - vehicle positions → detour events over MQTT",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start with default config
  python run_detour_processor.py --config config/detour_processor.yaml

  # Start without file logging (console only)
  python run_detour_processor.py --config config/detour_processor.yaml --no-log-file
        """
    )

    parser.add_argument(
        '--config',
        type=Path,
        required=True,
        help='Path to processor configuration YAML file'
    )

    parser.add_argument(
        '--log-file',
        type=Path,
        default=Path('logs/detour_processor.log'),
        help='Path to log file (default: logs/detour_processor.log)'
    )

    parser.add_argument(
        '--no-log-file',
        action='store_true',
        help='Disable file logging (console only)'
    )

    return parser.parse_args()


def main():
    args = parse_args()

    log_file = None if args.no_log_file else args.log_file

    if not args.config.exists():
        print(f"❌ Error: Configuration file not found: {args.config}", file=sys.stderr)
        sys.exit(1)

    app = ProcessorApp(config_path=args.config, log_file=log_file)

    try:
        app.setup()
        app.run()
    except Exception as e:
        print(f"❌ Fatal error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
