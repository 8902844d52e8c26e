#!/usr/bin/env python3
"""
KV Operator Entry Point

This is the main entry point for starting the operator.

Usage:
    python -m kv_operator.server                      # Watch every namespace
    python -m kv_operator.server --namespace prod     # Watch one namespace
    python -m kv_operator.server --kubeconfig ~/.kube/config
    python -m kv_operator.server --debug              # Enable debug logging

Environment Variables:
    KV_OPERATOR_NAMESPACE                 - Namespace to watch ("" for all)
    KV_OPERATOR_MAX_CONCURRENT_RECONCILES - Clusters reconciled in parallel
    KV_OPERATOR_CLUSTER_DOMAIN            - DNS suffix of in-cluster services
    KV_OPERATOR_DEBUG                     - Enable debug mode (true/false)
"""

import argparse
import asyncio
import logging
import signal
import sys

from .config.settings import settings
from .controller import Controller
from .network.pool import ClientPool
from .platform.kubernetes import KubernetesPlatform, load_config
from .reconcile.pipeline import Reconciler


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="KV Operator: reconciles sharded, replicated KV clusters",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--namespace",
        type=str,
        default=settings.NAMESPACE,
        help="Namespace to watch (empty for all namespaces)",
    )

    parser.add_argument(
        "--max-concurrent",
        type=int,
        default=settings.MAX_CONCURRENT_RECONCILES,
        help="Maximum number of clusters reconciled in parallel",
    )

    parser.add_argument(
        "--kubeconfig",
        type=str,
        default=None,
        help="Kubeconfig file (in-cluster credentials when omitted)",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        default=settings.DEBUG,
        help="Enable debug logging",
    )

    return parser.parse_args()


def setup_logging(debug: bool = False) -> None:
    """Configure logging based on debug flag."""
    level = logging.DEBUG if debug else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout),
        ]
    )
    # The kubernetes client logs every request at DEBUG
    logging.getLogger("kubernetes").setLevel(logging.INFO if debug else logging.WARNING)


async def serve(args: argparse.Namespace) -> None:
    """Run the controller and its watches until a shutdown signal."""
    logger = logging.getLogger(__name__)

    settings.NAMESPACE = args.namespace
    settings.MAX_CONCURRENT_RECONCILES = args.max_concurrent

    load_config(args.kubeconfig)
    platform = KubernetesPlatform(config=settings)
    clients = ClientPool(settings)
    controller = Controller(Reconciler(platform, clients, settings), settings)

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def shutdown(sig: signal.Signals) -> None:
        """Handle shutdown signal."""
        logger.info(f"Received signal {sig.name}, initiating shutdown...")
        shutdown_event.set()

    # Register signal handlers (Unix only)
    if sys.platform != 'win32':
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, shutdown, sig)

    logger.info("Starting KV operator")
    logger.info(f"  Namespace: {args.namespace or '<all>'}")
    logger.info(f"  Max concurrent reconciles: {args.max_concurrent}")
    logger.info(f"  Debug: {args.debug}")

    tasks = [
        asyncio.create_task(controller.run()),
        asyncio.create_task(controller.watch_resources(platform, args.namespace)),
        asyncio.create_task(controller.watch_pods(platform, args.namespace)),
    ]
    stopper = asyncio.create_task(shutdown_event.wait())

    try:
        done, _ = await asyncio.wait(tasks + [stopper], return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            if task is not stopper and task.exception() is not None:
                raise task.exception()
    finally:
        stopper.cancel()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, stopper, return_exceptions=True)
        await controller.stop()
        await clients.close()
        await platform.close()
        logger.info("Operator shutdown complete")


def main() -> None:
    """Main entry point for the operator."""
    args = parse_args()
    setup_logging(debug=args.debug)
    logger = logging.getLogger(__name__)

    try:
        asyncio.run(serve(args))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    except Exception as e:
        logger.error(f"Operator error: {e}")
        raise


if __name__ == "__main__":
    main()
