"""
Detour CLI - Main entry point.

Provides command-line interface for sending MQTT commands to the detour
processor and watching detour events.
"""

import argparse
import json
import sys
import threading
from typing import Any, Dict, Optional

from detour_mqtt import DetourEventSubscriber, create_logger
from detour_mqtt.schemas import DetourEvent, Timestamp
from detour_processor.config import MQTTConfig

from .mqtt_client import MQTTCommandClient

SIMPLE_COMMANDS = ('status', 'list-detours', 'pause', 'resume')


def build_command(args: argparse.Namespace) -> Dict[str, Any]:
    """
    Translate parsed arguments into a control command payload.

    Raises:
        ValueError: For commands that are not sent to the control plane
    """
    if args.command in SIMPLE_COMMANDS:
        return {'command': args.command.replace('-', '_')}

    if args.command == 'history':
        command: Dict[str, Any] = {'command': 'detour_history', 'limit': args.limit}
        if args.route:
            command['route_id'] = args.route
        return command

    if args.command == 'evidence':
        return {'command': 'route_evidence', 'route_id': args.route_id}

    raise ValueError(f"'{args.command}' is not a control command")


def format_event(event: DetourEvent) -> str:
    """One console line per event."""
    when = Timestamp(event.occurred_at_ms).to_iso()
    line = f"{when}  {event.event_type.value:<16} route={event.route_id}"
    data = event.to_dict()
    if 'changedFields' in data:
        line += f" changed={','.join(data['changedFields'])}"
    if data.get('durationMs') is not None:
        line += f" duration={data['durationMs'] // 1000}s"
    if data.get('confidence'):
        line += f" confidence={data['confidence']}"
    return line


def send_command(
    command: Dict[str, Any],
    service_id: str,
    broker: str = "localhost",
    port: int = 1883,
    wait: bool = True
) -> Optional[Dict[str, Any]]:
    """Send command to the processor via MQTT, optionally waiting for the reply."""
    topics = MQTTConfig(broker=broker, port=port).topics(service_id)

    client = MQTTCommandClient(broker=broker, port=port)
    return client.send_command(
        topics['commands'],
        command,
        qos=1,
        status_topic=topics['status'] if wait else None,
    )


def watch_events(service_id: str, broker: str, port: int) -> None:
    """Print detour events until interrupted."""
    topic = MQTTConfig(broker=broker, port=port).topics(service_id)['events']
    subscriber = DetourEventSubscriber(
        broker_host=broker,
        broker_port=port,
        topic=topic,
        on_event=lambda event: print(format_event(event), flush=True),
        logger=create_logger("detour_cli"),
        client_id=f"detour_cli_watch_{service_id}",
    )
    if not subscriber.connect():
        raise ConnectionError(f"Unable to connect to MQTT broker at {broker}:{port}")
    subscriber.start()
    print(f"👀 Watching {topic}/# (Ctrl+C to stop)")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        subscriber.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Detour CLI - Control the detour processor over MQTT",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  detour-cli status
  detour-cli list-detours
  detour-cli history --limit 20 --route 8A
  detour-cli evidence 8A
  detour-cli pause
  detour-cli resume
  detour-cli watch
"""
    )

    parser.add_argument(
        "--service-id",
        default="detour_processor",
        help="Target service ID (default: detour_processor)"
    )
    parser.add_argument(
        "--broker",
        default="localhost",
        help="MQTT broker host (default: localhost)"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=1883,
        help="MQTT broker port (default: 1883)"
    )
    parser.add_argument(
        "--no-wait",
        action="store_true",
        help="Do not wait for the service reply"
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    subparsers.add_parser('status', help='Query service status')
    subparsers.add_parser('list-detours', help='List current detours')
    subparsers.add_parser('pause', help='Pause polling')
    subparsers.add_parser('resume', help='Resume polling')

    history = subparsers.add_parser('history', help='List archived detours')
    history.add_argument('--limit', type=int, default=50, help='Max entries (1-200, default: 50)')
    history.add_argument('--route', default=None, help='Only this route')

    evidence = subparsers.add_parser('evidence', help="Show evidence behind a route's detour")
    evidence.add_argument('route_id', help='Route ID')

    subparsers.add_parser('watch', help='Print detour events as they are published')

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        if args.command == 'watch':
            watch_events(args.service_id, args.broker, args.port)
            return

        command = build_command(args)
        reply = send_command(command, args.service_id, args.broker, args.port, wait=not args.no_wait)
        if reply is not None:
            print(json.dumps(reply, indent=2))
        elif not args.no_wait:
            print("⚠️ No reply from service (is it running?)", file=sys.stderr)

    except Exception as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
