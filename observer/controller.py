"""
Main controller module that initializes and runs the Observer operator.
"""

import argparse
import logging

import kopf

from . import config
from . import handlers  # This will import and register all kopf handlers


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Route observer operator")
    parser.add_argument("--namespace", default=config.NAMESPACE,
                        help="Watch Observers in this namespace only (default: all namespaces)")
    parser.add_argument("--target-namespace", default=config.TARGET_NAMESPACE,
                        help="Target namespace for Observers that do not set one")
    parser.add_argument("--bridge-namespace", default=config.BRIDGE_NAMESPACE,
                        help="Bridge namespace for Observers that do not set one")
    parser.add_argument("--health-port", type=int, default=config.HEALTH_PORT,
                        help="Port of the health server, 0 disables it")
    return parser.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    config.NAMESPACE = args.namespace
    config.TARGET_NAMESPACE = args.target_namespace
    config.BRIDGE_NAMESPACE = args.bridge_namespace
    config.HEALTH_PORT = args.health_port

    logging.getLogger().setLevel(getattr(logging, config.LOG_LEVEL.upper(), logging.INFO))
    logging.getLogger(__name__).info(f"Registered handlers from {handlers.__name__}")

    if config.NAMESPACE:
        kopf.run(standalone=True, namespaces=[config.NAMESPACE])
    else:
        kopf.run(standalone=True, clusterwide=True)


if __name__ == "__main__":
    main()
