"""
Maintenance CLI for the recommendation engine.

Usage:
    recs-engine score '{"type": "view", "metadata": {"timeOnPage": 120, "scrollDepth": 0.8}}'
    echo '{"type": "click"}' | recs-engine score -
    recs-engine purge
    recs-engine stats --period 30d
    recs-engine feed trending --limit 5 --timeframe 7

Exit codes: 0 ok, 2 validation error, 3 not found, 4 rate limited, 5 anything else.
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from pydantic import ValidationError as PydanticValidationError

from config.settings import get_settings
from core.auth import Identity
from core.errors import RecsError, ValidationError, exit_code_for
from core.logging import configure_logging, get_logger
from core.utils import convert_numpy
from recs.models import InteractionKind, InteractionRequest
from recs.scorer import score_engagement
from recs.service import STRATEGY_GENERATORS, normalize_query


logger = get_logger(__name__)


def _print(payload: Dict[str, Any]) -> None:
    print(json.dumps(convert_numpy(payload), indent=2, sort_keys=True))


def _read_payload(raw: str) -> Dict[str, Any]:
    text = sys.stdin.read() if raw == "-" else raw
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON: {e.msg}", {"position": e.pos})
    if not isinstance(data, dict):
        raise ValidationError("Interaction must be a JSON object")
    return data


# =============================================================================
# Commands
# =============================================================================

def cmd_score(args: argparse.Namespace) -> int:
    """Score one interaction without recording it."""
    try:
        request = InteractionRequest.model_validate(_read_payload(args.interaction))
    except PydanticValidationError as e:
        raise ValidationError("Invalid interaction", {"problems": e.errors(include_url=False)})
    if not isinstance(request.kind, str) or not request.kind:
        raise ValidationError("Interaction type is required", {"field": "type"})
    if request.metadata is not None and not isinstance(request.metadata, dict):
        raise ValidationError("metadata must be an object", {"field": "metadata"})
    kind = InteractionKind.coerce(request.kind)
    _print({"kind": kind.value, "engagementQuality": score_engagement(kind, request.metadata)})
    return 0


async def _purge(engine) -> int:
    removed = await engine.purge_expired()
    _print({"removed": removed, "retentionDays": engine.settings.retention_days})
    return 0


async def _stats(engine, period: str) -> int:
    _print(await engine.service.stats(period))
    return 0


async def _feed(engine, args: argparse.Namespace) -> int:
    query = normalize_query(
        args.strategy,
        limit=args.limit,
        offset=args.offset,
        blend=args.blend,
        sort_by=args.sort_by,
        category=args.category,
        tags=args.tags,
        timeframe=args.timeframe,
        seed_product_id=args.product_id if args.strategy == "similar" else None,
        maker_id=args.maker_id if args.strategy == "maker" else None,
    )
    if args.strategy == "similar" and query.seed_product_id is None:
        raise ValidationError("--product-id is required for similar", {"field": "productId"})
    if args.strategy == "maker" and query.maker_id is None:
        raise ValidationError("--maker-id is required for maker", {"field": "makerId"})
    if args.strategy == "category" and query.category_id is None:
        raise ValidationError("--category is required for category", {"field": "category"})

    identity = Identity(client_id=args.client_id) if args.client_id else Identity()
    page = await engine.service.query(identity, query)
    _print(page.to_response())
    return 0


async def _with_engine(args: argparse.Namespace) -> int:
    from recs.engine import RecommendationEngine

    engine = RecommendationEngine(get_settings())
    await engine.startup()
    try:
        if args.command == "purge":
            return await _purge(engine)
        if args.command == "stats":
            return await _stats(engine, args.period)
        return await _feed(engine, args)
    finally:
        await engine.shutdown()


# =============================================================================
# Entry point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="recs-engine", description="Recommendation engine maintenance")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    score = sub.add_parser("score", help="Score one interaction (JSON, or - for stdin)")
    score.add_argument("interaction", help="Interaction JSON, e.g. '{\"type\": \"view\"}'")

    sub.add_parser("purge", help="Delete interactions older than the retention window")

    stats = sub.add_parser("stats", help="Per-strategy interaction aggregates")
    stats.add_argument("--period", default="7d", help="Look-back period such as 7d, 12h or 2w")

    feed = sub.add_parser("feed", help="Print one page of recommendations")
    feed.add_argument("strategy", choices=["feed"] + sorted(STRATEGY_GENERATORS))
    feed.add_argument("--limit", type=int, default=None)
    feed.add_argument("--offset", type=int, default=None)
    feed.add_argument("--blend", default=None)
    feed.add_argument("--sort-by", dest="sort_by", default=None)
    feed.add_argument("--category", default=None)
    feed.add_argument("--tags", default=None, help="Comma separated tags")
    feed.add_argument("--timeframe", default=None, help="Trending window, e.g. 7 or 7d")
    feed.add_argument("--product-id", dest="product_id", default=None, help="Seed product for similar")
    feed.add_argument("--maker-id", dest="maker_id", default=None)
    feed.add_argument("--client-id", dest="client_id", default=None, help="Anonymous client id")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    configure_logging(log_level="DEBUG" if args.verbose else "WARNING")

    try:
        if args.command == "score":
            return cmd_score(args)
        return asyncio.run(_with_engine(args))
    except RecsError as e:
        print(json.dumps({"error": {"kind": e.kind, "message": e.message, "details": e.details}}, default=str), file=sys.stderr)
        return exit_code_for(e)
    except Exception as e:
        logger.error("Command failed", command=args.command, error=str(e), exc_info=True)
        return exit_code_for(e)


if __name__ == "__main__":
    sys.exit(main())
