from django.conf import settings

DEFAULTS = {
    "VERIFICATION_TTL_MINUTES": 30,
    "CODE_PREFIX": "FOMO",
    "CODE_LENGTH": 8,
    "RATE_LIMIT_PER_HOUR": 5,
    "DISPOSABLE_DOMAINS": [
        "mailinator.com",
        "guerrillamail.com",
        "10minutemail.com",
        "tempmail.com",
        "throwaway.email",
    ],
    "BANNED_IPS": [],  # адреса и подсети в CIDR, напр. "10.0.0.0/8"
    "MAX_FIXED_DISCOUNT": 10000,
    "MAX_TOTAL_CODES": 10000,
    "ISSUER": {"provider_type": "dummy"},
    "NOTIFIER": {"provider_type": "dummy"},
}


def get_claim_settings() -> dict:
    """Настройки выдачи кодов: FOMO_CLAIMS из settings поверх DEFAULTS"""
    cfg = getattr(settings, "FOMO_CLAIMS", None) or {}
    merged = {**DEFAULTS, **cfg}
    # вложенные словари провайдеров тоже сливаем с дефолтами
    merged["ISSUER"] = {**DEFAULTS["ISSUER"], **(cfg.get("ISSUER") or {})}
    merged["NOTIFIER"] = {**DEFAULTS["NOTIFIER"], **(cfg.get("NOTIFIER") or {})}
    return merged
