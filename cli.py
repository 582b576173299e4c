from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict

from dro.context import DeploymentContext, TopologyKind, parse_target
from dro.db import Journal
from dro.docker_ops import DockerRuntime
from dro.errors import NoSnapshotError
from dro.pipeline import Orchestrator, RunReport
from dro.settings import settings
from dro.snapshots import SnapshotStore


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _report(rep: RunReport) -> dict:
    return {
        "run_id": rep.run_id,
        "kind": rep.kind,
        "state": rep.state.value,
        "snapshot_id": rep.snapshot_id,
        "warnings": rep.warnings,
        "error": rep.error,
    }


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Deployment Release Orchestrator CLI")
    p.add_argument("--deploy-dir", default=None, help="Deployment directory (default: $DRO_DEPLOY_DIR)")
    p.add_argument("-v", "--verbose", action="store_true")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_dep = sub.add_parser("deploy", help="Roll out registry/repository:tag")
    s_dep.add_argument("image", help="Image reference, e.g. 123.dkr.ecr.us-east-1.amazonaws.com/app:1.4.2")
    s_dep.add_argument("--topology", choices=[k.value for k in TopologyKind], default=None)
    s_dep.add_argument(
        "--allow-topology-change",
        action="store_true",
        help="Permit switching persistence backend (you are responsible for migrating data)",
    )
    s_dep.add_argument("--no-rollback", action="store_true", help="Leave a failed release in place")

    sub.add_parser("rollback", help="Restore the newest snapshot")
    sub.add_parser("snapshots", help="List snapshots")
    sub.add_parser("status", help="Show the latest run")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--run", type=int, default=None)

    args = p.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%F %T",
    )

    overrides = {"deploy_dir": args.deploy_dir}
    if args.cmd == "deploy":
        overrides["topology"] = args.topology
        overrides["allow_topology_change"] = args.allow_topology_change or None
        if args.no_rollback:
            overrides["auto_rollback"] = False
    ctx = DeploymentContext.from_settings(settings, **overrides)

    if args.cmd == "deploy":
        try:
            target = parse_target(args.image)
        except ValueError as e:
            p.error(str(e))
        rep = Orchestrator(ctx, DockerRuntime()).deploy(target)
        _print(_report(rep))
        return 0 if rep.ok else 1

    if args.cmd == "rollback":
        rep = Orchestrator(ctx, DockerRuntime()).rollback()
        _print(_report(rep))
        return 0 if rep.ok else 1

    if args.cmd == "snapshots":
        store = SnapshotStore(ctx, DockerRuntime())
        out = []
        for snapshot_id in reversed(store.list_ids()):
            try:
                out.append(store.info(snapshot_id).model_dump(mode="json"))
            except NoSnapshotError:
                continue
        _print(out)
        return 0

    if args.cmd == "status":
        row = Journal(ctx.db_path).latest_run()
        if row is None:
            _print({"state": "Idle", "message": "No runs recorded yet"})
            return 0
        _print({**asdict(row), "warnings": row.warning_list})
        return 0 if row.state in {"Healthy", "RolledBack", "Idle"} else 1

    if args.cmd == "events":
        _print(Journal(ctx.db_path).latest_events(args.limit, run_id=args.run))
        return 0

    return 2


def _entrypoint() -> None:
    raise SystemExit(main(sys.argv[1:]))


if __name__ == "__main__":
    _entrypoint()
