#!/usr/bin/env python3
"""
Profile Manager - tenant Profile/Contributor controller and access management API.
"""

import argparse
import dataclasses
import logging
import sys
from typing import Any, Dict, List, Optional

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

#
# NOTE: Keep heavy imports lazy (inside functions): the API server does not need the
# controller runner and vice versa.
#


def build_config(args: argparse.Namespace):
    """Environment config, with any CLI flags layered on top."""
    from profile_manager.config import load_config, parse_labels

    cfg = load_config()
    overrides: Dict[str, Any] = {}
    if args.cluster_admin:
        overrides["cluster_admins"] = frozenset(cfg.cluster_admins | set(args.cluster_admin))
    if args.userid_header:
        overrides["userid_header"] = args.userid_header
    if args.userid_prefix is not None:
        overrides["userid_prefix"] = args.userid_prefix
    if args.enable_istio is not None:
        overrides["enable_istio"] = args.enable_istio
    if args.enable_pipelines:
        overrides["enable_pipelines"] = True
    if args.enable_namespace_adoption:
        overrides["enable_namespace_adoption"] = True
    if args.namespace_label:
        labels = dict(cfg.namespace_labels)
        labels.update(parse_labels(",".join(args.namespace_label)))
        overrides["namespace_labels"] = labels
    return dataclasses.replace(cfg, **overrides) if overrides else cfg


def run_controller(cfg, *, workers: int) -> None:
    from profile_manager.controller.runner import ControllerRunner
    from profile_manager.providers.k8s_store import DefaultK8sStore

    store = DefaultK8sStore(request_timeout=cfg.request_timeout_seconds)
    ControllerRunner(store, cfg, workers=workers).run_forever()


def main(argv: Optional[List[str]] = None):
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Converge tenant Profiles/Contributors and serve the access management API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the controller loop (watches Profiles, Contributors and derived objects)
  python main.py --run-controller --workers 4

  # Serve the access management API
  python main.py --serve-api --port 8081 --cluster-admin admin@example.com
        """,
    )

    parser.add_argument("--run-controller", action="store_true", help="Run the Profile/Contributor controller loop")
    parser.add_argument("--serve-api", action="store_true", help="Run the access management HTTP API")
    parser.add_argument("--host", default="0.0.0.0", help="API server bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8081, help="API server listen port (default: 8081)")
    parser.add_argument("--workers", type=int, default=4, help="Concurrent reconcile workers (default: 4)")

    # Config overrides (env vars are the primary source)
    parser.add_argument(
        "--cluster-admin",
        action="append",
        metavar="USER",
        help="Add a static cluster admin (repeatable; merged with CLUSTER_ADMINS)",
    )
    parser.add_argument("--userid-header", help="Request header carrying the caller identity")
    parser.add_argument("--userid-prefix", help="Prefix stripped from the identity header value")
    parser.add_argument(
        "--enable-istio", dest="enable_istio", action="store_true", default=None, help="Manage AuthorizationPolicies"
    )
    parser.add_argument(
        "--disable-istio", dest="enable_istio", action="store_false", help="Do not manage AuthorizationPolicies"
    )
    parser.add_argument("--enable-pipelines", action="store_true", help="Label tenant namespaces for pipelines")
    parser.add_argument(
        "--enable-namespace-adoption",
        action="store_true",
        help="Allow Profiles to take over pre-existing namespaces they do not own",
    )
    parser.add_argument(
        "--namespace-label",
        action="append",
        metavar="KEY=VALUE",
        help="Extra label for tenant namespaces (repeatable; merged with NAMESPACE_LABELS)",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args(argv)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    cfg = build_config(args)

    if args.run_controller and args.serve_api:
        parser.error("--run-controller and --serve-api are separate processes; pick one")

    if args.run_controller:
        run_controller(cfg, workers=args.workers)
        return

    if args.serve_api:
        from profile_manager.api.server import run as run_api

        run_api(host=args.host, port=args.port, config=cfg)
        return

    # No mode provided
    parser.print_help()


if __name__ == "__main__":
    main()
