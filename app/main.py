"""Главный файл приложения."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.config import settings
from app.api.v1 import router as api_v1_router
from app.core.rate_limit import rate_limiter
from app.database import AsyncSessionLocal
from app.services.phonepe_service import GatewayConfigurationError, PhonePeService
from app.services.reconciliation_service import ReconciliationService

# Настройка логирования
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Глобальный планировщик задач
scheduler = AsyncIOScheduler()


async def reconcile_stale_payments():
    """Периодическая сверка зависших платежей."""
    gateway = app.state.phonepe
    if gateway is None:
        logger.warning("Сверка пропущена: PhonePe не настроен")
        return
    try:
        async with AsyncSessionLocal() as db:
            service = ReconciliationService(db, gateway)
            counts = await service.sweep(
                min_age_minutes=settings.reconcile_sweep_min_age_minutes,
                limit=settings.reconcile_sweep_batch_size,
            )
            if counts:
                logger.info(f"Сверка зависших платежей: {counts}")
    except Exception as e:
        logger.error(f"Ошибка при сверке зависших платежей: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Управление жизненным циклом приложения."""
    # Startup
    await rate_limiter.connect()

    try:
        app.state.phonepe = PhonePeService.from_settings(settings)
        logger.info(f"PhonePe client ready ({settings.phonepe_environment})")
    except GatewayConfigurationError as e:
        # Приложение поднимается, но эндпоинты платежей отвечают 500
        logger.error(f"❌ PhonePe not configured: {e}")
        app.state.phonepe = None

    if settings.reconcile_sweep_enabled:
        scheduler.add_job(
            reconcile_stale_payments,
            trigger=IntervalTrigger(minutes=settings.reconcile_sweep_interval_minutes),
            id="reconcile_stale_payments",
            name="Сверка зависших платежей",
            replace_existing=True,
        )
        scheduler.start()
        logger.info(
            f"Планировщик задач запущен. Сверка платежей каждые "
            f"{settings.reconcile_sweep_interval_minutes} мин"
        )

    yield

    # Shutdown
    if scheduler.running:
        scheduler.shutdown(wait=False)
    if app.state.phonepe is not None:
        await app.state.phonepe.aclose()
    await rate_limiter.disconnect()


app = FastAPI(
    title="Co-living Payments API",
    description="Платежи аренды через PhonePe",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS - в development режиме разрешаем ВСЕ origins
if settings.is_development:
    cors_origins = ["*"]
    # Нельзя использовать allow_credentials=True с allow_origins=["*"]
    allow_creds = False
else:
    cors_origins = list(set(settings.cors_origins))
    allow_creds = True

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=allow_creds,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# Подключаем роутеры
app.include_router(api_v1_router, prefix="/api/v1")


@app.get("/")
async def root():
    """Корневой endpoint."""
    return {
        "message": "Co-living Payments API",
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "ok"}
