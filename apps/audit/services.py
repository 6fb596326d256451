import logging

from .models import AuditLog

logger = logging.getLogger(__name__)


def log_audit(action: str, obj=None, *, old_value=None, new_value=None, request=None) -> AuditLog:
    """
    Записывает действие администратора. Пользователь, IP и User-Agent
    берутся из request, если он передан.
    """
    user, ip, ua = None, None, ''
    if request is not None:
        if getattr(request, 'user', None) is not None and request.user.is_authenticated:
            user = request.user
        ip = request.META.get('HTTP_X_FORWARDED_FOR', '').split(',')[0].strip() or request.META.get('REMOTE_ADDR')
        ua = request.META.get('HTTP_USER_AGENT', '')

    entry = AuditLog.objects.create(
        user=user,
        action=action,
        object_type=obj._meta.model_name if obj is not None else '',
        object_id=obj.pk if obj is not None else None,
        old_value=old_value,
        new_value=new_value,
        ip_address=ip or None,
        user_agent=ua,
    )
    logger.info(f"Audit: {action} {entry.object_type}#{entry.object_id} by {user or 'system'}")
    return entry
