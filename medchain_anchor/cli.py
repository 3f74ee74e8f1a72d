"""
cli.py - Operator commands for the anchoring core (console script `medchain-anchor`).

  medchain-anchor init-db                       create the anchor tables
  medchain-anchor verify MEDICINE 101           three-way integrity check
  medchain-anchor status MEDICINE 101           integrity columns + ledger entries
  medchain-anchor history --kind STOCK          history feed (DB-authoritative)
  medchain-anchor sync --from-block 0           backfill contract events into the ledger
  medchain-anchor recover                       re-drive PENDING/SUBMITTED entries
  medchain-anchor stats                         on-chain record count per kind

Configuration comes from the environment / .env (see config.py). Output is JSON.
"""
import argparse
import asyncio
import json
import logging
import sys

from .anchor import Anchor
from .chain.adapter import GETTERS
from .config import Settings
from .errors import AnchorError
from .schemas import Kind

log = logging.getLogger("anchor.cli")


def _dump(obj) -> str:
    if hasattr(obj, "model_dump"):
        obj = obj.model_dump(mode="json", by_alias=True)
    return json.dumps(obj, indent=2, default=str, sort_keys=True)


def _kind(value: str) -> Kind:
    try:
        return Kind(value.upper())
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"unknown kind {value!r} (choose from {', '.join(k.value for k in Kind)})")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="medchain-anchor",
                                     description="Integrity anchoring operator commands")
    parser.add_argument("--env-file", default=None, help="path to a .env file")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="create anchor tables and integrity columns")

    p = sub.add_parser("verify", help="verify one or more records")
    p.add_argument("kind", type=_kind)
    p.add_argument("ids", type=int, nargs="+")

    p = sub.add_parser("status", help="integrity columns and ledger entries of a record")
    p.add_argument("kind", type=_kind)
    p.add_argument("id", type=int)

    p = sub.add_parser("history", help="history feed")
    p.add_argument("--kind", type=_kind, default=None)
    p.add_argument("--id", type=int, default=None, dest="entity_id")
    p.add_argument("--limit", type=int, default=None)

    p = sub.add_parser("sync", help="backfill contract events")
    p.add_argument("--from-block", type=int, default=None)
    p.add_argument("--to-block", type=int, default=None)

    sub.add_parser("recover", help="re-drive in-flight ledger entries until they settle")
    sub.add_parser("stats", help="on-chain counts per kind")
    return parser


async def _run(args, settings: Settings) -> dict:
    if args.command == "init-db":
        if settings.store_backend != "postgres":
            return {"ok": False, "error": "init-db needs STORE_BACKEND=postgres"}
        from .db import PgAnchorStore
        store = PgAnchorStore(settings.database_url)
        try:
            await store.init_db()
        finally:
            await store.close()
        return {"ok": True}

    anchor = Anchor.from_settings(settings)
    try:
        if args.command == "verify":
            if len(args.ids) == 1:
                return (await anchor.verify(args.kind, args.ids[0])).model_dump(mode="json")
            report = await anchor.verify_many(args.kind, args.ids)
            report["results"] = [r.model_dump(mode="json") for r in report["results"]]
            return report

        if args.command == "status":
            integrity = await anchor.read_integrity(args.kind, args.id)
            entries = await anchor.store.entries_for(args.kind, args.id)
            return {"integrity": integrity.model_dump(mode="json"),
                    "ledger": [e.model_dump(mode="json") for e in entries]}

        if args.command == "history":
            page = await anchor.history(kind=args.kind, entity_id=args.entity_id, limit=args.limit)
            return page.model_dump(mode="json", by_alias=True)

        if args.command == "sync":
            if anchor.ingester is None:
                return {"ok": False, "error": "; ".join(anchor.submit_problems)}
            start = args.from_block if args.from_block is not None else settings.start_block
            counts = await anchor.ingester.sync(start, args.to_block)
            return {"ok": True, "from_block": start, "events": counts}

        if args.command == "recover":
            queued = await anchor.pipeline.recover()
            await anchor.pipeline.drain()
            remaining = await anchor.store.in_flight()
            return {"queued": queued, "still_in_flight": [e.ledger_id for e in remaining]}

        if args.command == "stats":
            if anchor.chain is None:
                return {"ok": False, "error": "; ".join(anchor.submit_problems)}
            counts = {kind.value: await anchor.chain.get_count(kind) for kind in GETTERS}
            return {"block": await anchor.chain.current_block(), "counts": counts}
    finally:
        await anchor.close()
    raise AssertionError(f"unhandled command {args.command}")


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env(args.env_file)
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )
    try:
        out = asyncio.run(_run(args, settings))
    except AnchorError as exc:
        log.error("%s failed: %s", args.command, exc)
        print(_dump(exc.to_dict()))
        return 1
    print(_dump(out))
    return 0 if out.get("ok", True) else 1


if __name__ == "__main__":
    sys.exit(main())
