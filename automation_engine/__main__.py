"""
Command-line entry point.

Examples:
    python -m automation_engine run
    python -m automation_engine trigger pricing_analysis --payload '{"listing_id": "l-1"}' --sync
    python -m automation_engine notify user-1 welcome
    python -m automation_engine health
"""

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path

from automation_engine.config import EngineConfig
from automation_engine.controller import build_controller, register_builtin_handlers
from automation_engine.errors import AutomationError, ValidationError
from automation_engine.health import format_report
from automation_engine.models import AutomationType


logger = logging.getLogger("automation.cli")


def _json_arg(value: str):
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise argparse.ArgumentTypeError(f"invalid JSON: {e}")


def cmd_run(controller, args) -> int:
    stop = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    controller.initialize()
    print(json.dumps(controller.get_system_status(), indent=2))
    while not stop.wait(1.0):
        pass
    controller.shutdown()
    return 0


def cmd_status(controller, args) -> int:
    print(json.dumps(controller.get_system_status(), indent=2))
    return 0


def cmd_health(controller, args) -> int:
    controller.initialize()
    try:
        report = controller.health_check()
    finally:
        controller.shutdown()
    print(format_report(report))
    return 0 if report.healthy else 1


def cmd_trigger(controller, args) -> int:
    options = {'sync': args.sync}
    if args.priority is not None:
        options['priority'] = args.priority
    if args.payload is not None:
        options['payload'] = args.payload
    if args.timeout is not None:
        options['timeout'] = args.timeout
    if args.dedup_key:
        options['dedup_key'] = args.dedup_key

    if not args.sync:
        # Leave the job for the next `run` over the same database
        if controller.config.db_path is None:
            raise ValidationError(
                "trigger without --sync needs AUTOMATION_DB_PATH; "
                "an in-memory queue is discarded when this command exits"
            )
        register_builtin_handlers(controller)
        response = controller.trigger_automation(args.type, options)
        print(json.dumps(response, indent=2))
        return 0

    controller.initialize()
    try:
        response = controller.trigger_automation(args.type, options)
    finally:
        controller.shutdown()
    print(json.dumps(response, indent=2))
    return 0 if response.get('state') in (None, 'succeeded') else 1


def cmd_notify(controller, args) -> int:
    sent = controller.send_immediate_notification(args.user_id, args.template, args.data or {})
    print("sent" if sent else "not sent")
    return 0 if sent else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="automation_engine",
        description="AutoMarket automation engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    %(prog)s run                     Start the engine until interrupted
    %(prog)s status                  Show queue depth and running jobs
    %(prog)s health                  Run health checks (exit 1 unless up)
    %(prog)s trigger cleanup --sync  Run a cleanup and wait for it
        """
    )
    parser.add_argument('--env-file', type=Path, help='Load settings from this .env file')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable debug logging')

    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('run', help='Start the engine until SIGINT/SIGTERM')
    sub.add_parser('status', help='Show system status')
    sub.add_parser('health', help='Run health checks')

    trigger = sub.add_parser('trigger', help='Trigger an automation')
    trigger.add_argument('type', choices=[t.value for t in AutomationType])
    trigger.add_argument('--priority', type=int)
    trigger.add_argument('--payload', type=_json_arg, help='JSON payload')
    trigger.add_argument('--dedup-key')
    trigger.add_argument('--sync', action='store_true', help='Wait for the job to finish')
    trigger.add_argument('--timeout', type=float, help='Seconds to wait with --sync')

    notify = sub.add_parser('notify', help='Send a notification immediately')
    notify.add_argument('user_id')
    notify.add_argument('template')
    notify.add_argument('--data', type=_json_arg, help='JSON template data')

    return parser


COMMANDS = {
    'run': cmd_run,
    'status': cmd_status,
    'health': cmd_health,
    'trigger': cmd_trigger,
    'notify': cmd_notify,
}


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        controller = build_controller(EngineConfig.from_env(env_file=args.env_file))
        return COMMANDS[args.command](controller, args)
    except AutomationError as e:
        logger.error(str(e))
        return 2


if __name__ == '__main__':
    sys.exit(main())
