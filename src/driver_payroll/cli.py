"""Driver payroll command line interface.

Provides operational tools for:
- Building, rebuilding, posting and voiding pay runs
- Inspecting a pay run, its drivers and its items
- Listing pay runs
- Creating the schema in a development database

Usage:
    python -m driver_payroll build --cohort-days 14 --start 2024-01-01 --end 2024-01-14
    python -m driver_payroll rebuild PAY_RUN_ID
    python -m driver_payroll post PAY_RUN_ID --actor-id USER_ID
    python -m driver_payroll void PAY_RUN_ID --reason "Wrong period"
    python -m driver_payroll show PAY_RUN_ID --items
    python -m driver_payroll list --status DRAFT
    python -m driver_payroll init-db

Every command prints JSON. Exit codes: 0 on success, 1 on a terminal error,
75 (EX_TEMPFAIL) when the error is retryable.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from typing import Any, Awaitable, Callable
from uuid import UUID

from pydantic import BaseModel

from driver_payroll.config import get_settings
from driver_payroll.database import create_schema, get_engine, make_session_factory
from driver_payroll.engine import PayRunEngine
from driver_payroll.errors import OperationResult
from driver_payroll.schemas import PayRunResponse
from driver_payroll.services import BuildResult
from driver_payroll.tenancy import TenantContext

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_TEMPFAIL = 75

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Route package logs to stderr so stdout stays machine-readable."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, stream=sys.stderr)


def parse_uuid(s: str) -> UUID:
    """Parse UUID string."""
    return UUID(s)


def to_jsonable(value: Any) -> Any:
    """Convert operation results into JSON-ready structures."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, BuildResult):
        return {
            "pay_run": PayRunResponse.model_validate(value.pay_run).model_dump(mode="json"),
            "drivers": [driver.to_dict() for driver in value.drivers],
            "totals": value.totals.to_dict(),
        }
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {k: to_jsonable(v) for k, v in dataclasses.asdict(value).items()}
    return value


class PayrollCli:
    """Driver payroll command line interface."""

    def __init__(self, engine_factory: Callable[[argparse.Namespace], Any] | None = None):
        self.parser = self._build_parser()
        self._engine_factory = engine_factory

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m driver_payroll",
            description="Driver pay run tools",
        )
        parser.add_argument(
            "--database-url",
            type=str,
            help="Async database URL (default: $DATABASE_URL)",
        )
        parser.add_argument(
            "--log-level",
            type=str,
            help="Log level (default: $LOG_LEVEL or INFO)",
        )
        parser.add_argument(
            "--org-id",
            type=parse_uuid,
            help="Organization ID (omit for the legacy single-tenant scope)",
        )
        parser.add_argument(
            "--actor-id",
            type=parse_uuid,
            help="User performing the operation",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        # build command
        build = subparsers.add_parser("build", help="Build a DRAFT pay run for a cohort")
        build.add_argument(
            "--cohort-days",
            type=int,
            required=True,
            help="Pay cycle length: 7, 14, 21 or 30",
        )
        build.add_argument("--start", required=True, help="Period start (YYYY-MM-DD)")
        build.add_argument("--end", required=True, help="Period end (YYYY-MM-DD)")
        build.add_argument("--label", type=str, help="Label (default: derived from cohort)")
        build.add_argument(
            "--driver-id",
            type=parse_uuid,
            action="append",
            dest="driver_ids",
            help="Restrict the cohort to this driver (repeatable)",
        )

        # rebuild command
        rebuild = subparsers.add_parser("rebuild", help="Reconcile a DRAFT pay run")
        rebuild.add_argument("pay_run_id", type=parse_uuid)

        # post command
        post = subparsers.add_parser("post", help="Post a DRAFT pay run")
        post.add_argument("pay_run_id", type=parse_uuid)

        # void command
        void = subparsers.add_parser("void", help="Void a DRAFT pay run")
        void.add_argument("pay_run_id", type=parse_uuid)
        void.add_argument("--reason", type=str, required=True, help="Why the run is voided")

        # show command
        show = subparsers.add_parser("show", help="Show a pay run")
        show.add_argument("pay_run_id", type=parse_uuid)
        show.add_argument("--drivers", action="store_true", help="Include driver summaries")
        show.add_argument("--items", action="store_true", help="Include line items")

        # list command
        listing = subparsers.add_parser("list", help="List pay runs")
        listing.add_argument("--status", choices=["DRAFT", "POSTED", "VOID"])
        listing.add_argument("--cohort-days", type=int)
        listing.add_argument("--from", dest="period_from", help="Period start on/after")
        listing.add_argument("--to", dest="period_to", help="Period end on/before")
        listing.add_argument("--page", type=int, default=1)
        listing.add_argument("--limit", type=int, default=50)
        listing.add_argument(
            "--sort-by",
            choices=["created_at", "period_start", "period_end", "cohort_days", "status"],
            default="created_at",
        )
        listing.add_argument("--sort-order", choices=["asc", "desc"], default="desc")

        # init-db command
        subparsers.add_parser("init-db", help="Create tables (development only)")

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return EXIT_ERROR

        configure_logging(parsed.log_level or get_settings().log_level)

        handlers: dict[str, Callable[[PayRunEngine, argparse.Namespace], Awaitable[int]]] = {
            "build": self._cmd_build,
            "rebuild": self._cmd_rebuild,
            "post": self._cmd_post,
            "void": self._cmd_void,
            "show": self._cmd_show,
            "list": self._cmd_list,
        }

        if parsed.command == "init-db":
            return asyncio.run(self._cmd_init_db(parsed))

        handler = handlers.get(parsed.command)
        if handler is None:
            print(f"Unknown command: {parsed.command}", file=sys.stderr)
            return EXIT_ERROR
        return asyncio.run(self._dispatch(handler, parsed))

    async def _dispatch(
        self,
        handler: Callable[[PayRunEngine, argparse.Namespace], Awaitable[int]],
        args: argparse.Namespace,
    ) -> int:
        if self._engine_factory is not None:
            return await handler(self._engine_factory(args), args)

        db_engine = get_engine(args.database_url)
        try:
            engine = PayRunEngine(make_session_factory(db_engine))
            return await handler(engine, args)
        finally:
            await db_engine.dispose()

    @staticmethod
    def _tenant(args: argparse.Namespace) -> TenantContext:
        return TenantContext(organization_id=args.org_id, actor_id=args.actor_id)

    @staticmethod
    def _emit(result: OperationResult[Any]) -> int:
        if result.ok:
            print(json.dumps(to_jsonable(result.value), indent=2, default=str))
            return EXIT_OK
        assert result.error is not None
        print(json.dumps({"error": result.error.to_dict()}, indent=2, default=str))
        return EXIT_TEMPFAIL if result.retryable else EXIT_ERROR

    async def _cmd_build(self, engine: PayRunEngine, args: argparse.Namespace) -> int:
        """Build a pay run."""
        request: dict[str, Any] = {
            "cohort_days": args.cohort_days,
            "period_start": args.start,
            "period_end": args.end,
        }
        if args.label:
            request["label"] = args.label
        if args.driver_ids:
            request["driver_ids"] = args.driver_ids
        return self._emit(await engine.build(request, self._tenant(args)))

    async def _cmd_rebuild(self, engine: PayRunEngine, args: argparse.Namespace) -> int:
        """Rebuild a pay run."""
        return self._emit(await engine.rebuild(args.pay_run_id, self._tenant(args)))

    async def _cmd_post(self, engine: PayRunEngine, args: argparse.Namespace) -> int:
        """Post a pay run."""
        return self._emit(await engine.post(args.pay_run_id, self._tenant(args)))

    async def _cmd_void(self, engine: PayRunEngine, args: argparse.Namespace) -> int:
        """Void a pay run."""
        return self._emit(
            await engine.void(args.pay_run_id, {"reason": args.reason}, self._tenant(args))
        )

    async def _cmd_show(self, engine: PayRunEngine, args: argparse.Namespace) -> int:
        """Show a pay run with optional drivers and items."""
        tenant = self._tenant(args)
        result = await engine.get_pay_run(args.pay_run_id, tenant)
        if not result.ok or not (args.drivers or args.items):
            return self._emit(result)

        view: dict[str, Any] = {"pay_run": result.value}
        if args.drivers:
            drivers = await engine.list_drivers(args.pay_run_id, tenant)
            if not drivers.ok:
                return self._emit(drivers)
            view["drivers"] = drivers.value
        if args.items:
            items = await engine.list_items(args.pay_run_id, tenant)
            if not items.ok:
                return self._emit(items)
            view["items"] = items.value
        return self._emit(OperationResult.success(view))

    async def _cmd_list(self, engine: PayRunEngine, args: argparse.Namespace) -> int:
        """List pay runs."""
        query: dict[str, Any] = {
            "page": args.page,
            "limit": args.limit,
            "sort_by": args.sort_by,
            "sort_order": args.sort_order,
        }
        if args.status:
            query["status"] = args.status
        if args.cohort_days is not None:
            query["cohort_days"] = args.cohort_days
        if args.period_from:
            query["from"] = args.period_from
        if args.period_to:
            query["to"] = args.period_to
        return self._emit(await engine.list_pay_runs(query, self._tenant(args)))

    async def _cmd_init_db(self, args: argparse.Namespace) -> int:
        """Create all tables."""
        db_engine = get_engine(args.database_url)
        try:
            await create_schema(db_engine)
        finally:
            await db_engine.dispose()
        print(json.dumps({"status": "ok"}))
        return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    return PayrollCli().run(argv)


if __name__ == "__main__":
    sys.exit(main())
