"""Скрипт для ручного запуска сверки зависших платежей с PhonePe."""
import asyncio
import argparse
import logging

from app.config import settings
from app.database import AsyncSessionLocal
from app.services.phonepe_service import PhonePeService
from app.services.reconciliation_service import ReconciliationService

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def main(min_age_minutes: int, limit: int):
    """Сверить незавершенные платежи старше min_age_minutes."""
    gateway = PhonePeService.from_settings(settings)
    try:
        async with AsyncSessionLocal() as db:
            service = ReconciliationService(db, gateway)
            counts = await service.sweep(min_age_minutes=min_age_minutes, limit=limit)
            logger.info(f"Сверка завершена: {counts or 'нет зависших платежей'}")
    except Exception as e:
        logger.error(f"Ошибка при сверке платежей: {e}", exc_info=True)
        raise
    finally:
        await gateway.aclose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description='Сверить зависшие платежи с PhonePe')
    parser.add_argument('--min-age', type=int, default=settings.reconcile_sweep_min_age_minutes,
                        help='Минимальный возраст платежа в минутах')
    parser.add_argument('--limit', type=int, default=settings.reconcile_sweep_batch_size,
                        help='Сколько платежей сверить за запуск')
    args = parser.parse_args()

    asyncio.run(main(args.min_age, args.limit))
