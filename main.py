import argparse
import logging
import sys
import threading
import time

from sshesame.auth import AuthDecisionEngine
from sshesame.config import resolve
from sshesame.errors import SSHesameError
from sshesame.logger import setup_logger
from sshesame.ssh_server import SSHHoneypot, build_handshake_config

logger = logging.getLogger('sshesame')


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="SSH honeypot that logs every authentication attempt.")
    parser.add_argument('--config', metavar='PATH', help="config file (default: $XDG_CONFIG_HOME/sshesame.yaml)")
    parser.add_argument('--data-dir', metavar='PATH', help="base directory for generated host keys (default: $XDG_DATA_HOME)")
    parser.add_argument('--log-file', metavar='PATH', help="also write the log to this file")
    parser.add_argument('--json-log-dir', metavar='PATH', help="write JSON lines audit records to this directory")
    parser.add_argument('--debug', action='store_true', help="log debug messages")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    setup_logger('sshesame', log_file=args.log_file, json_log_dir=args.json_log_dir,
                 level=logging.DEBUG if args.debug else logging.INFO)

    try:
        policy = resolve(args.config, data_home=args.data_dir)
        handshake = build_handshake_config(policy, AuthDecisionEngine(policy))
        ssh_honeypot = SSHHoneypot(handshake, policy.listen_address)
    except SSHesameError as e:
        logger.error(f"Failed to start: {e}")
        return 1

    t = threading.Thread(target=ssh_honeypot.start)
    t.daemon = True
    t.start()

    try:
        while t.is_alive():
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Stopping honeypot...")
        ssh_honeypot.stop()
        return 0
    return 1


if __name__ == "__main__":
    sys.exit(main())
