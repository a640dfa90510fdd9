from __future__ import annotations

import argparse
import json
from pathlib import Path
import sys

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from futures_gateway.integrations.md_ws import MarketDataStreamHandler
from futures_gateway.services.basis import BasisCalculator


def replay(lines: list[str], *, spot: float | None = None, reference: str | None = None) -> dict:
    """Feed recorded frames (one per line) through a detached stream handler."""
    basis = BasisCalculator(reference_instrument=reference)
    handler = MarketDataStreamHandler(on_quotes_changed=basis.on_quotes_changed)
    if spot is not None:
        basis.update_spot(spot)

    for line in lines:
        if line.strip():
            handler.on_frame_received(line.rstrip("\n"))

    return {
        "quotes": [q.model_dump() for q in handler.quotes()],
        "metrics": handler.metrics(),
        "basis": basis.snapshot().model_dump(),
    }


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Replay recorded depth-market-data frames.")
    parser.add_argument("path", type=Path, help="file with one raw frame per line")
    parser.add_argument("--spot", type=float, default=None)
    parser.add_argument("--reference", default=None)
    args = parser.parse_args(argv)

    lines = args.path.read_text(encoding="utf-8").splitlines()
    result = replay(lines, spot=args.spot, reference=args.reference)
    print(json.dumps(result, ensure_ascii=False, indent=2))


if __name__ == "__main__":
    main()
