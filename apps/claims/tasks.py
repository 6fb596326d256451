"""
Celery задачи обслуживания заявок: освобождение просроченных резервов,
очистка истекших купонов, повторная выдача купонов
"""
import logging

from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task(bind=True, max_retries=3)
def sweep_expired_claims_task(self):
    """Освобождает неподтвержденные заявки с истекшим сроком (каждый час)"""
    from .services import get_claim_service

    try:
        released = get_claim_service().sweep_expired()
        logger.info(f"Sweep released {released} expired reservations")
        return released
    except Exception as e:
        logger.error(f"Error sweeping expired claims: {e}")
        raise self.retry(exc=e, countdown=60)


@shared_task(bind=True, max_retries=3)
def cleanup_expired_claims_task(self):
    """Помечает истекшие купоны и удаляет их во внешней системе (каждый час)"""
    from .services import get_claim_service

    try:
        return get_claim_service().cleanup_expired()
    except Exception as e:
        logger.error(f"Error cleaning up expired claims: {e}")
        raise self.retry(exc=e, countdown=300)


@shared_task(bind=True, max_retries=2)
def retry_pending_issuance_task(self, limit: int = 100):
    """Повторно создает купоны, которые не удалось выдать (каждые 15 минут)"""
    from .services import get_claim_service

    try:
        return get_claim_service().retry_pending_issuance(limit=limit)
    except Exception as e:
        logger.error(f"Error retrying coupon issuance: {e}")
        raise self.retry(exc=e, countdown=120)
