"""
Report (and optionally repair) records that differ between the two stores.

The engine never reconciles stores on its own; a failed write leaves one
store stale. This is the operator-triggered repair job:

    dualsync-compare --category users
    dualsync-compare --category content_data --repair
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dualsync.backends import Backends, initialize_backends
from dualsync.config import get_settings
from dualsync.types import Category, StoreId
from dualsync.writes import DualWriteCoordinator

logger = logging.getLogger(__name__)

COMPARABLE = (Category.USER, Category.CONTENT, Category.SETTINGS)


@dataclass
class DivergenceReport:
    category: Category
    fast_only: List[str] = field(default_factory=list)
    durable_only: List[str] = field(default_factory=list)
    differing: List[str] = field(default_factory=list)
    identical: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return not (self.fast_only or self.durable_only or self.differing or self.errors)

    def as_dict(self) -> dict:
        return {
            "category": self.category.value,
            "in_sync": self.in_sync,
            "fast_only": self.fast_only,
            "durable_only": self.durable_only,
            "differing": self.differing,
            "identical": self.identical,
            "errors": self.errors,
        }


async def _snapshot(backends: Backends, store: StoreId, category: Category) -> Optional[Dict]:
    if not backends.ready(store):
        return None
    result = await backends.adapter(store).read_all(category)
    return result.value if result.ok else None


async def compare_stores(backends: Backends, category: Category) -> DivergenceReport:
    report = DivergenceReport(category=category)
    fast = await _snapshot(backends, StoreId.FAST, category)
    durable = await _snapshot(backends, StoreId.DURABLE, category)
    if fast is None:
        report.errors.append("fast store could not be read")
    if durable is None:
        report.errors.append("durable store could not be read")
    if report.errors:
        return report

    for key in sorted(set(fast) | set(durable)):
        if key not in durable:
            report.fast_only.append(key)
        elif key not in fast:
            report.durable_only.append(key)
        elif fast[key] != durable[key]:
            report.differing.append(key)
        else:
            report.identical += 1
    return report


async def repair(backends: Backends, report: DivergenceReport) -> int:
    """Re-save diverged records through the dual-write path.

    The fast store wins when both stores hold a value; records only the
    durable store has are copied back to the fast store.
    """
    if report.errors:
        return 0
    writer = DualWriteCoordinator(backends)
    category = report.category
    repaired = 0
    for key in report.fast_only + report.differing:
        result = await backends.fast.read(category, key)
        if result.found and (await writer.save(category, key, result.value)).success:
            repaired += 1
    for key in report.durable_only:
        result = await backends.durable.read(category, key)
        if result.found and (await writer.save(category, key, result.value)).success:
            repaired += 1
    logger.info(f"Repaired {repaired} {category.value} records")
    return repaired


async def run(category: Category, *, fix: bool) -> DivergenceReport:
    backends = initialize_backends(get_settings())
    try:
        report = await compare_stores(backends, category)
        if fix and not report.in_sync:
            await repair(backends, report)
        return report
    finally:
        await backends.aclose()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument(
        "--category",
        choices=[c.value for c in COMPARABLE],
        default=Category.USER.value,
    )
    parser.add_argument(
        "--repair",
        action="store_true",
        help="Re-save diverged records so both stores converge.",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)
    report = asyncio.run(run(Category(args.category), fix=args.repair))
    json.dump(report.as_dict(), sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0 if report.in_sync or args.repair else 1


if __name__ == "__main__":
    sys.exit(main())
