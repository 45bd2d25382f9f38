"""
Overstay Scan Runner
Run a single overstay scan outside the ARQ worker: python run_overstay_scan.py [--date YYYY-MM-DD]
"""

import argparse
import asyncio
import logging
import sys
from datetime import date
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent))

from kitchenhub import models, models_overstay  # noqa: F401,E402
from kitchenhub.domain.overstays.scanner import run_overstay_scan  # noqa: E402

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run one storage overstay scan")
    parser.add_argument("--date", help="Scan as of this date (YYYY-MM-DD), default today (UTC)")
    args = parser.parse_args()

    today = date.fromisoformat(args.date) if args.date else None
    logger.info("🚀 Starting overstay scan...")
    try:
        summary = asyncio.run(run_overstay_scan(today=today))
    except KeyboardInterrupt:
        logger.info("👋 Overstay scan stopped by user")
        sys.exit(130)
    except Exception as e:
        logger.error(f"❌ Overstay scan crashed: {e}")
        sys.exit(1)

    if summary.skipped:
        logger.info("⏭️ Another scan is already running")
    logger.info(f"✅ Scan summary: {summary.to_dict()}")
    sys.exit(1 if summary.errors else 0)
