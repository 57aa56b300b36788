"""
clusterup CLI entry point.

Usage:
    clusterup deploy                    Deploy to every node in the inventory
    clusterup deploy --node n1 --node n2 --skip system_prep
    clusterup nodes list                List nodes
    clusterup nodes add <address> ...   Add a node
    clusterup verify                    Run cluster verification on the primary
    clusterup config show               Show current configuration
"""

import argparse
import sys
import threading
from pathlib import Path
from typing import Optional

from clusterup import __version__
from clusterup.config.defaults import SUPPORTED_ARCHES
from clusterup.config.loader import load_config
from clusterup.config.schemas import ClusterUpConfig
from clusterup.telemetry.logger import get_logger, setup_logging


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="clusterup",
        description="Deploy multi-node Kubernetes clusters with kubeadm over SSH",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  clusterup nodes add 10.0.0.10 --role primary --password secret
  clusterup nodes add 10.0.0.11 --key ~/.ssh/id_ed25519
  clusterup deploy --kube-version 1.29.3
  clusterup deploy --skip system_prep --skip repo_config
  clusterup verify
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--config",
        type=Path,
        metavar="PATH",
        help="Path to custom configuration file",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Override log level",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # deploy subcommand
    deploy_parser = subparsers.add_parser("deploy", help="Deploy a cluster")
    deploy_parser.add_argument(
        "--kube-version",
        metavar="VERSION",
        help="Kubernetes version, e.g. 1.29.3 (default from config)",
    )
    deploy_parser.add_argument(
        "--arch",
        choices=list(SUPPORTED_ARCHES),
        help="CPU architecture (default from config)",
    )
    deploy_parser.add_argument(
        "--node",
        dest="nodes",
        action="append",
        metavar="ID",
        help="Node ID to include (repeatable, default: all nodes)",
    )
    deploy_parser.add_argument(
        "--skip",
        action="append",
        default=[],
        metavar="STEP",
        help="Step to skip (repeatable or comma-separated)",
    )

    # nodes subcommand
    nodes_parser = subparsers.add_parser("nodes", help="Node inventory management")
    nodes_subparsers = nodes_parser.add_subparsers(dest="nodes_command")
    nodes_subparsers.add_parser("list", help="List all nodes")
    nodes_add = nodes_subparsers.add_parser("add", help="Add a node")
    nodes_add.add_argument("address", help="Node IP address or hostname")
    nodes_add.add_argument("--name", help="Display name")
    nodes_add.add_argument("--id", dest="node_id", help="Node ID (random by default)")
    nodes_add.add_argument(
        "--role",
        default="secondary",
        help="primary or secondary (master/worker accepted)",
    )
    nodes_add.add_argument("--port", type=int, default=22, help="SSH port")
    nodes_add.add_argument("--username", help="SSH username")
    credential = nodes_add.add_mutually_exclusive_group(required=True)
    credential.add_argument("--password", help="SSH password")
    credential.add_argument("--key", type=Path, metavar="PATH", help="Private key file")
    nodes_remove = nodes_subparsers.add_parser("remove", help="Remove a node")
    nodes_remove.add_argument("node_id", help="Node ID to remove")
    nodes_test = nodes_subparsers.add_parser("test", help="Check SSH connectivity")
    nodes_test.add_argument("node_id", nargs="?", help="Node ID (default: all nodes)")

    # scripts subcommand
    scripts_parser = subparsers.add_parser("scripts", help="Script override management")
    scripts_subparsers = scripts_parser.add_subparsers(dest="scripts_command")
    scripts_subparsers.add_parser("list", help="List overrides and built-in steps")

    # packages subcommand
    packages_parser = subparsers.add_parser("packages", help="Pre-staged binary cache")
    packages_subparsers = packages_parser.add_subparsers(dest="packages_command")
    packages_subparsers.add_parser("list", help="List staged packages")

    # steps subcommand
    subparsers.add_parser("steps", help="Show the deployment pipeline")

    # verify subcommand
    verify_parser = subparsers.add_parser("verify", help="Verify the cluster on the primary")
    verify_parser.add_argument("--node", dest="node_id", metavar="ID", help="Primary node ID")

    # config subcommand
    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("init", help="Initialize default configuration")

    return parser


def _load(config_path: Optional[Path], log_level: Optional[str]) -> ClusterUpConfig:
    config = load_config(config_path)
    if log_level:
        config.log_level = log_level
    setup_logging(
        config.log_level,
        config.telemetry.log_file,
        json_format=config.telemetry.json_logs,
    )
    return config


def _create_engine(config: ClusterUpConfig):
    from clusterup.orchestrator.engine import DeploymentEngine
    from clusterup.orchestrator.logsink import JsonlLogSink
    from clusterup.orchestrator.nodes import NodeInventory
    from clusterup.orchestrator.packages import LocalPackageCache
    from clusterup.orchestrator.scripts import ScriptStore

    storage = config.storage
    return DeploymentEngine(
        config=config,
        script_provider=ScriptStore(storage.scripts_file.expanduser()),
        log_sink=JsonlLogSink(storage.deploy_log),
        package_cache=LocalPackageCache(storage.packages_dir),
        node_provider=NodeInventory(storage.nodes_file.expanduser()),
    )


def _print_progress(node_id: str, node_name: str, message: str) -> None:
    print(f"[{node_name}] {message}", flush=True)


def cmd_deploy(args: argparse.Namespace) -> int:
    """Deploy a cluster to inventory nodes."""
    from clusterup.orchestrator.errors import TopologyError

    try:
        config = _load(args.config, args.log_level)
    except Exception as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        return 1

    logger = get_logger(__name__)
    engine = _create_engine(config)
    try:
        nodes = engine.resolve_nodes(args.nodes)
    except TopologyError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if not nodes:
        print("No nodes in inventory")
        print("\nTo add a node: clusterup nodes add <address> --password <password>")
        return 1

    cancel = threading.Event()
    outcome = {}

    def run() -> None:
        try:
            outcome["result"] = engine.deploy(
                nodes,
                version=args.kube_version,
                arch=args.arch,
                skip_steps=args.skip,
                cancel=cancel,
                on_log=_print_progress,
            )
        except Exception as e:
            logger.exception("Deployment crashed")
            outcome["crash"] = e

    logger.info("Starting clusterup deploy", version=__version__, nodes=len(nodes))
    worker = threading.Thread(target=run, name="deploy")
    worker.start()
    try:
        while worker.is_alive():
            worker.join(timeout=0.5)
    except KeyboardInterrupt:
        print("\nCancelling deployment, waiting for running commands to finish...")
        cancel.set()
        worker.join()

    if "crash" in outcome:
        print(f"Error during deployment: {outcome['crash']}", file=sys.stderr)
        return 1

    result = outcome["result"]
    print()
    print("=" * 50)
    if result.success:
        print(f"Deployment succeeded ({result.duration_ms / 1000:.1f}s)")
        return 0

    if result.error:
        print(f"Deployment failed: {result.error}")
    for join in result.failed_joins:
        print(f"  ✗ {join.node_name}: {join.status.value} ({join.error})")
    return 130 if result.cancelled else 1


def cmd_nodes(args: argparse.Namespace) -> int:
    """Node inventory commands."""
    from clusterup.orchestrator.errors import DeploymentError
    from clusterup.orchestrator.nodes import (
        NodeInventory,
        NodeRole,
        NodeStatus,
        create_node,
    )
    from clusterup.orchestrator.ssh import check_connection

    try:
        config = _load(args.config, args.log_level)
    except Exception as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        return 1

    inventory = NodeInventory(config.storage.nodes_file.expanduser())

    if args.nodes_command == "list":
        nodes = inventory.list_nodes()
        if not nodes:
            print("No nodes in inventory")
            print("\nTo add a node: clusterup nodes add <address> --password <password>")
            return 0

        print(f"Nodes ({len(nodes)} total):")
        print("-" * 60)
        for node in nodes:
            status_icon = {
                NodeStatus.READY: "●",
                NodeStatus.ONLINE: "●",
                NodeStatus.DEPLOYING: "◐",
                NodeStatus.OFFLINE: "○",
                NodeStatus.ERROR: "✗",
                NodeStatus.UNKNOWN: "?",
            }.get(node.status, "?")

            print(f"  {status_icon} {node.id} ({node.role.value})")
            print(f"    Name: {node.name}")
            print(f"    Address: {node.username}@{node.address}:{node.port}")
            print(f"    Auth: {node.credential_kind or 'invalid'}")
            if node.distro:
                print(f"    Distro: {node.distro}")
            print(f"    Status: {node.status.value}")
            print()
        return 0

    elif args.nodes_command == "add":
        try:
            role = NodeRole.parse(args.role)
        except ValueError:
            print(f"Unknown role: {args.role}", file=sys.stderr)
            return 1

        if role == NodeRole.PRIMARY and any(n.is_primary for n in inventory.list_nodes()):
            print("Warning: inventory already has a primary node; deploy with --node to pick one")

        node = create_node(
            address=args.address,
            name=args.name,
            role=role,
            port=args.port,
            username=args.username or config.ssh.default_username,
            password=args.password,
            private_key_path=args.key.expanduser() if args.key else None,
            node_id=args.node_id,
        )
        try:
            inventory.add(node)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        inventory.save()

        print(f"Added node: {node.id}")
        print(f"  Address: {node.address}")
        print(f"  Role: {node.role.value}")
        return 0

    elif args.nodes_command == "remove":
        if inventory.remove(args.node_id):
            inventory.save()
            print(f"Removed node: {args.node_id}")
            return 0
        print(f"Node not found: {args.node_id}")
        return 1

    elif args.nodes_command == "test":
        if args.node_id:
            node = inventory.get_node(args.node_id)
            if not node:
                print(f"Node not found: {args.node_id}")
                return 1
            nodes = [node]
        else:
            nodes = inventory.list_nodes()

        failures = 0
        for node in nodes:
            try:
                result = check_connection(node, connect_timeout=config.ssh.connect_timeout)
            except DeploymentError as e:
                inventory.update_status(node.id, NodeStatus.OFFLINE)
                print(f"Node {node.id}: OFFLINE")
                print(f"  Error: {e}")
                failures += 1
                continue

            if result.success:
                inventory.update_status(node.id, NodeStatus.ONLINE)
                print(f"Node {node.id}: ONLINE ({result.duration_ms:.1f}ms)")
            else:
                inventory.update_status(node.id, NodeStatus.ERROR)
                print(f"Node {node.id}: ERROR")
                print(f"  Error: {result.error}")
                failures += 1
        return 0 if failures == 0 else 1

    else:
        print("Unknown nodes command. Use: list, add, remove, test")
        return 1


def cmd_scripts(args: argparse.Namespace) -> int:
    """Script override commands."""
    from clusterup.orchestrator.scripts import ScriptStore, builtin_step_names

    if args.scripts_command != "list":
        print("Unknown scripts command. Use: list")
        return 1

    try:
        config = _load(args.config, args.log_level)
        store = ScriptStore(config.storage.scripts_file.expanduser())
    except Exception as e:
        print(f"Error loading scripts: {e}", file=sys.stderr)
        return 1

    print("Built-in steps:")
    for name in builtin_step_names():
        print(f"  {name}")
    print()

    names = store.names()
    if not names:
        print("No script overrides")
        print(f"\nOverrides are read from: {config.storage.scripts_file}")
        return 0

    print(f"Overrides ({len(names)}):")
    for name in names:
        text, _ = store.get_script(name)
        print(f"  {name} ({len(text.splitlines())} lines)")
    return 0


def cmd_packages(args: argparse.Namespace) -> int:
    """Package cache commands."""
    from clusterup.orchestrator.packages import LocalPackageCache

    if args.packages_command != "list":
        print("Unknown packages command. Use: list")
        return 1

    try:
        config = _load(args.config, args.log_level)
    except Exception as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        return 1

    cache = LocalPackageCache(config.storage.packages_dir)
    entries = cache.list_entries()
    if not entries:
        print(f"No staged packages in {cache.root}")
        return 0

    print(f"Staged packages ({len(entries)}):")
    for entry in entries:
        print(f"  {entry}")
    return 0


def cmd_steps() -> int:
    """Show the default deployment pipeline."""
    from clusterup.orchestrator.steps import Pipeline

    print("Deployment pipeline:")
    print("-" * 60)
    for index, step in enumerate(Pipeline(), start=1):
        print(
            f"  {index}. {step.name.value:<20} {step.title:<28}"
            f" [{step.scope.value}, on failure: {step.failure_policy.value}]"
        )
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    """Run cluster verification on the primary node."""
    from clusterup.orchestrator.errors import DeploymentError

    try:
        config = _load(args.config, args.log_level)
    except Exception as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        return 1

    engine = _create_engine(config)
    if args.node_id:
        primary = engine.node_provider.get_node(args.node_id)
    else:
        primary = next((n for n in engine.node_provider.list_nodes() if n.is_primary), None)
    if primary is None:
        print("No primary node found", file=sys.stderr)
        return 1

    try:
        result = engine.verify_cluster(primary, on_log=_print_progress)
    except DeploymentError as e:
        print(f"Verification failed: {e}", file=sys.stderr)
        return 1
    return 0 if result.success else 1


def cmd_config_show(config_path: Optional[Path]) -> int:
    """Show current configuration."""
    try:
        config = load_config(config_path)
        print("Current clusterup Configuration:")
        print("=" * 50)
        print(config.model_dump_json(indent=2))
        return 0
    except Exception as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        return 1


def cmd_config_init(config_path: Optional[Path]) -> int:
    """Initialize default configuration file."""
    from clusterup.config.loader import create_default_config, get_default_config_path

    target_path = config_path or get_default_config_path()
    try:
        create_default_config(target_path)
        print(f"Created default configuration at: {target_path}")
        return 0
    except Exception as e:
        print(f"Error creating configuration: {e}", file=sys.stderr)
        return 1


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command == "deploy":
        return cmd_deploy(args)

    elif args.command == "nodes":
        return cmd_nodes(args)

    elif args.command == "scripts":
        return cmd_scripts(args)

    elif args.command == "packages":
        return cmd_packages(args)

    elif args.command == "steps":
        return cmd_steps()

    elif args.command == "verify":
        return cmd_verify(args)

    elif args.command == "config":
        if args.config_command == "show":
            return cmd_config_show(args.config)
        elif args.config_command == "init":
            return cmd_config_init(args.config)
        else:
            parser.parse_args(["config", "--help"])
            return 1

    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
