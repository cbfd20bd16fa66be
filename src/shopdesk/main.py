from __future__ import annotations

import logging
import sys

from shopdesk.application.container import AppContainer, build_container
from shopdesk.config import get_app_paths, load_settings
from shopdesk.domain.errors import AppError
from shopdesk.logging_config import setup_logging

log = logging.getLogger(__name__)


def daily_check(container: AppContainer) -> dict[str, int]:
    """Refresh the cached rate and report low stock and expiring warranties for every active user."""
    rate = container.fx.get_rate()
    if rate is None:
        log.warning("daily_check_no_fx_rate")
    else:
        log.info("daily_check_fx usd_try=%.4f", rate.usd_to_try)

    low = 0
    expiring = 0
    for user in container.repo.list_users():
        if not user.active:
            continue
        low_items = container.inventory.low_stock(user, limit=50)
        warranties = container.service.expiring_warranties(user)
        for p in low_items:
            log.warning("low_stock user=%s product_id=%s name=%s qty=%s min=%s",
                        user.id, p.id, p.name, p.quantity, p.min_stock_level)
        for r in warranties:
            log.info("warranty_expiring user=%s record_id=%s customer=%s end=%s",
                     user.id, r.id, r.customer_name, r.warranty_end_date)
        low += len(low_items)
        expiring += len(warranties)

    return {"low_stock": low, "expiring_warranties": expiring}


def main() -> int:
    paths = get_app_paths()
    setup_logging(paths.logs_dir, level=logging.INFO)
    settings = load_settings()

    try:
        container = build_container(paths.db_path, settings)
        summary = daily_check(container)
    except AppError as e:
        log.exception("daily_check_failed")
        print(f"ShopDesk check failed: {e}", file=sys.stderr)
        return 1

    print(f"ShopDesk: {summary['low_stock']} low-stock products, "
          f"{summary['expiring_warranties']} warranties expiring soon. Logs: {paths.logs_dir}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
