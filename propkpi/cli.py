import argparse, json, logging, sys
from datetime import date
from uuid import UUID
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError

from .config import DB_URL, LOG_LEVEL, PipelineConfig
from .db import SqlKpiStore
from .pipeline import PipelineError, run_all_pipelines
from .reports import available_months, internal_summary, partner_unit_summary
from .schema import metadata

def _month(s: str) -> date:
    """'2024-03' or '2024-03-17' -> date(2024, 3, 1)"""
    try:
        d = date.fromisoformat(s if len(s) > 7 else s + "-01")
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a month: {s!r}") from None
    return d.replace(day=1)

def main(argv=None):
    ap = argparse.ArgumentParser(prog="propkpi", description="Property KPI pipelines")
    ap.add_argument("--database-url", default=DB_URL)
    ap.add_argument("--log-level", default=LOG_LEVEL)
    sub = ap.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Recompute every KPI from all available data")
    sub.add_parser("months", help="List months that have transactions")
    p = sub.add_parser("internal-summary", help="Internal KPI totals for a month")
    p.add_argument("--month", required=True, type=_month)
    p = sub.add_parser("partner-summary", help="Partner KPIs per unit for a month")
    p.add_argument("--month", required=True, type=_month)
    p.add_argument("--org-id", type=UUID)
    p.add_argument("--building-id", type=UUID)
    sub.add_parser("init-db", help="Create the pipeline tables")
    args = ap.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    engine = create_engine(args.database_url, future=True)
    store = SqlKpiStore(engine)

    try:
        if args.command == "run":
            out = run_all_pipelines(store, PipelineConfig()).as_dict()
        elif args.command == "months":
            out = [m.isoformat() for m in available_months(store)]
        elif args.command == "internal-summary":
            out = internal_summary(store, args.month).as_dict()
        elif args.command == "partner-summary":
            rows = partner_unit_summary(store, args.month, args.org_id, args.building_id)
            out = [r.as_dict() for r in rows]
        else:
            metadata.create_all(engine)
            out = {"tables": sorted(metadata.tables)}
    except (PipelineError, SQLAlchemyError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    print(json.dumps(out, ensure_ascii=False, indent=2))
    return 0

if __name__ == "__main__":
    sys.exit(main())
