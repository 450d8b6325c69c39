# Copyright 2022 TIER IV, INC. All rights reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Entrypoint of fwupdater."""


from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import asdict
from typing import Any, List, Optional

import uvloop

from fwupdater import __version__
from fwupdater._logging import configure_logging
from fwupdater._types import Credentials, HostRunState, ServerIdentity
from fwupdater.configs import (
    InvalidPlanFile,
    cfg,
    create_http_client,
    load_plan_file,
)
from fwupdater.configs._cfg_configurable import ENV_PREFIX
from fwupdater.orchestration.credentials import EnvCredentialResolver
from fwupdater.orchestration.state_machine import HostStateMachine
from fwupdater.orchestration.store import InMemoryHostRunStore
from fwupdater.orchestration.vcenter import VCenterMaintenanceController
from fwupdater.orchestration.worker import HostUpdateWorker
from fwupdater.protocols import create_default_protocol_manager, detect_protocols

logger = logging.getLogger(__name__)


def _dump(obj: Any) -> None:
    print(json.dumps(obj, indent=2, default=str))


def _credentials_from_args(args: argparse.Namespace) -> Credentials:
    username = args.user or os.environ.get(f"{ENV_PREFIX}BMC_USER")
    password = args.password or os.environ.get(f"{ENV_PREFIX}BMC_PASS")
    if not username or not password:
        raise SystemExit(
            f"credentials not provided, use --user/--password or "
            f"{ENV_PREFIX}BMC_USER/{ENV_PREFIX}BMC_PASS"
        )
    return Credentials(username=username, password=password, port=args.port)


async def _detect(args: argparse.Namespace) -> int:
    identity = ServerIdentity(host=args.host)
    credentials = _credentials_from_args(args)

    async with create_http_client() as http_client:
        res = await detect_protocols(identity, credentials, http_client=http_client)

    _dump(asdict(res))
    return 0 if res.healthiest else 1


async def _health(args: argparse.Namespace) -> int:
    identity = ServerIdentity(host=args.host)
    credentials = _credentials_from_args(args)

    async with create_http_client() as http_client:
        manager = create_default_protocol_manager(http_client=http_client)
        try:
            res = await manager.health(identity, credentials)
        finally:
            await manager.dispose()

    _dump([asdict(_health) for _health in res])
    return 0


async def _run_plan(args: argparse.Namespace) -> int:
    plan_file = load_plan_file(args.plan_file)
    resolver = EnvCredentialResolver()
    store = InMemoryHostRunStore()
    host_ids: List[str] = []

    async with create_http_client() as http_client:
        state_machine = HostStateMachine(
            store=store,
            hosts=plan_file,
            plans=plan_file,
            credentials=resolver,
            maintenance=VCenterMaintenanceController(resolver, http_client=http_client),
            http_client=http_client,
        )
        async with HostUpdateWorker(
            state_machine, store, concurrency=args.concurrency
        ) as worker:
            # a host runs one plan at a time, so plans are applied one after another
            for plan_id, _targets in plan_file.iter_targets():
                logger.info(f"apply plan {plan_id} to {_targets}")
                for host_id in _targets:
                    await worker.enqueue(host_id, plan_id)
                    if host_id not in host_ids:
                        host_ids.append(host_id)
                await worker.join()

    finished = [_run for _id in host_ids for _run in store.list_for_host(_id)]
    _dump(
        [
            {
                "id": _run.id,
                "host_id": _run.host_id,
                "plan_id": _run.plan_id,
                "state": _run.state,
                "attempts": _run.attempts,
                "ctx": _run.ctx,
            }
            for _run in finished
        ]
    )
    failed = [_run for _run in finished if _run.state != HostRunState.DONE]
    if failed:
        logger.error(f"{len(failed)} of {len(finished)} host runs failed")
        return 1
    return 0


def _add_target_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--host", help="BMC address of the server", required=True)
    parser.add_argument(
        "--user", help=f"BMC username, or set {ENV_PREFIX}BMC_USER", default=None
    )
    parser.add_argument(
        "--password", help=f"BMC password, or set {ENV_PREFIX}BMC_PASS", default=None
    )
    parser.add_argument("--port", help="BMC port override", type=int, default=None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fwupdater",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        description="out-of-band firmware update orchestration for rack servers",
    )
    parser.add_argument("--version", action="version", version=__version__)
    subparsers = parser.add_subparsers(dest="command", required=True)

    detect_parser = subparsers.add_parser(
        "detect",
        help="detect the supported management protocols of a server",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_target_args(detect_parser)
    detect_parser.set_defaults(func=_detect)

    health_parser = subparsers.add_parser(
        "health",
        help="check the health of every management protocol of a server",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_target_args(health_parser)
    health_parser.set_defaults(func=_health)

    run_parser = subparsers.add_parser(
        "run",
        help="run the firmware update plans of a plan file",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    run_parser.add_argument("plan_file", help="path to the plan file")
    run_parser.add_argument(
        "--concurrency",
        help="max number of hosts updated at the same time",
        type=int,
        default=cfg.WORKER_CONCURRENCY,
    )
    run_parser.set_defaults(func=_run_plan)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    logger.info(f"fwupdater {__version__} started: {args.command}")

    try:
        return uvloop.run(args.func(args))
    except InvalidPlanFile as e:
        logger.error(f"invalid plan file: {e!r}")
        return 2
    except KeyboardInterrupt:
        logger.warning("interrupted, exit now")
        return 130


if __name__ == "__main__":
    sys.exit(main())
