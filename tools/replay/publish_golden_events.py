from __future__ import annotations

import argparse
import glob
import json
import sys
from pathlib import Path

# Allow running from repo root without installing as a package.
sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from src.contracts import codec
from src.contracts.validation import validate_event_dict
from src.core.message_bus import RedisStreamBus


def _iter_event_files(root: Path) -> list[Path]:
    return [Path(p) for p in sorted(glob.glob(str(root / "*.json")))]


def main() -> None:
    ap = argparse.ArgumentParser(description="Publish golden events onto their topics' partition streams.")
    ap.add_argument("--redis-url", required=True)
    ap.add_argument("--events-dir", default=str(Path("contracts") / "golden_events" / "v1"))
    ap.add_argument("--partitions", type=int, default=3)
    ap.add_argument("--dry-run", action="store_true")
    ap.add_argument(
        "--fail-on-invalid",
        action="store_true",
        help="By default invalid golden events are skipped. Use this flag to fail fast instead.",
    )
    args = ap.parse_args()

    root = Path(args.events_dir)
    files = _iter_event_files(root)
    if not files:
        raise SystemExit(f"no golden events found under {root}")

    bus = None if args.dry_run else RedisStreamBus(args.redis_url, partitions=args.partitions)
    try:
        for fp in files:
            ev = json.loads(fp.read_text(encoding="utf-8"))
            try:
                validate_event_dict(ev)
                event = codec.from_wire_dict(ev)
            except ValueError as e:
                if args.fail_on_invalid:
                    raise
                print(f"[skip-invalid] {fp.name}: {e}")
                continue
            body = json.dumps(ev, ensure_ascii=False)
            if bus is None:
                print(f"[dry-run] send {event.topic} key={event.routing_key()} <- {fp.name}")
                continue
            result = bus.send(event.topic, event.routing_key(), body).result()
            print(f"send {result.topic} p{result.partition} @{result.offset} <- {fp.name}")
    finally:
        if bus is not None:
            bus.close()


if __name__ == "__main__":
    main()
