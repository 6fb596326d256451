"""
Создание купонов во внешней системе магазина
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Optional

import requests

from apps.campaigns.models import DiscountType, ScopeType

logger = logging.getLogger(__name__)


class CouponIssuerError(Exception):
    """Исключение для ошибок внешней системы купонов"""
    pass


class BaseCouponIssuer(ABC):
    """Базовый класс для систем купонов. issue() должен быть идемпотентен по коду"""

    def __init__(self, config: Dict[str, Any]):
        self.config = config

    @abstractmethod
    def issue(self, code: str, discount_type: str, discount_value: Decimal, identity: str,
              scope: Dict[str, Any], expires_at) -> str:
        """Создает купон, возвращает его id во внешней системе"""
        pass

    @abstractmethod
    def revoke(self, code: str, coupon_id: str = '') -> None:
        """Удаляет купон"""
        pass


class WooCommerceCouponIssuer(BaseCouponIssuer):
    """Купоны WooCommerce через REST API wc/v3"""

    ALREADY_EXISTS = 'woocommerce_rest_coupon_code_already_exists'

    @property
    def endpoint(self) -> str:
        base_url = (self.config.get('base_url') or '').rstrip('/')
        if not base_url:
            raise CouponIssuerError("WooCommerce base_url is not configured")
        return f"{base_url}/wp-json/wc/v3/coupons"

    @property
    def auth(self):
        return (self.config.get('consumer_key', ''), self.config.get('consumer_secret', ''))

    @property
    def timeout(self) -> int:
        return self.config.get('timeout', 10)

    def build_payload(self, code, discount_type, discount_value, identity, scope, expires_at) -> Dict[str, Any]:
        payload = {
            'code': code,
            'discount_type': 'percent' if discount_type == DiscountType.PERCENTAGE else 'fixed_cart',
            'amount': f"{Decimal(discount_value):.2f}",
            'individual_use': True,
            'usage_limit': 1,
            'usage_limit_per_user': 1,
            'email_restrictions': [identity],
            'date_expires_gmt': expires_at.strftime('%Y-%m-%dT%H:%M:%S'),
            'description': 'FOMO discount',
        }

        scope = scope or {}
        if scope.get('type') == ScopeType.PRODUCTS and scope.get('ids'):
            payload['product_ids'] = list(scope['ids'])
        elif scope.get('type') == ScopeType.CATEGORIES and scope.get('ids'):
            payload['product_categories'] = list(scope['ids'])
        return payload

    def issue(self, code, discount_type, discount_value, identity, scope, expires_at) -> str:
        payload = self.build_payload(code, discount_type, discount_value, identity, scope, expires_at)
        try:
            response = requests.post(self.endpoint, json=payload, auth=self.auth, timeout=self.timeout)
        except requests.RequestException as e:
            raise CouponIssuerError(f"WooCommerce request failed: {e}")

        if response.status_code in (200, 201):
            return str(response.json().get('id', ''))

        # повторный вызов с тем же кодом: купон уже создан, возвращаем его
        if response.status_code == 400 and self._error_code(response) == self.ALREADY_EXISTS:
            existing_id = self.find_coupon_id(code)
            if existing_id:
                logger.info(f"Coupon {code} already exists in WooCommerce (id={existing_id})")
                return existing_id

        raise CouponIssuerError(f"WooCommerce error: {response.status_code} - {response.text[:500]}")

    def find_coupon_id(self, code: str) -> Optional[str]:
        try:
            response = requests.get(self.endpoint, params={'code': code}, auth=self.auth, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise CouponIssuerError(f"WooCommerce lookup failed: {e}")

        items = response.json() or []
        if items:
            return str(items[0].get('id', ''))
        return None

    def revoke(self, code: str, coupon_id: str = '') -> None:
        coupon_id = coupon_id or self.find_coupon_id(code)
        if not coupon_id:
            return  # удалять нечего
        try:
            response = requests.delete(
                f"{self.endpoint}/{coupon_id}", params={'force': 'true'}, auth=self.auth, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise CouponIssuerError(f"WooCommerce delete failed: {e}")

        if response.status_code not in (200, 404):
            raise CouponIssuerError(f"WooCommerce delete error: {response.status_code} - {response.text[:500]}")

    @staticmethod
    def _error_code(response) -> str:
        try:
            return response.json().get('code', '')
        except ValueError:
            return ''


class DummyCouponIssuer(BaseCouponIssuer):
    """Хранит купоны в памяти, для разработки и тестов"""

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.coupons = {}
        self.calls = []

    def issue(self, code, discount_type, discount_value, identity, scope, expires_at) -> str:
        self.calls.append(code)
        if code not in self.coupons:
            self.coupons[code] = {
                'id': f"dummy_{len(self.coupons) + 1}",
                'discount_type': discount_type,
                'discount_value': Decimal(discount_value),
                'identity': identity,
                'scope': scope,
                'expires_at': expires_at,
            }
            logger.info(f"[DUMMY] Coupon {code} issued for {identity}")
        return self.coupons[code]['id']

    def revoke(self, code: str, coupon_id: str = '') -> None:
        self.coupons.pop(code, None)


def get_coupon_issuer(config: Optional[Dict[str, Any]] = None) -> BaseCouponIssuer:
    """Создает систему купонов по настройкам FOMO_CLAIMS['ISSUER']"""
    if config is None:
        from apps.claims.conf import get_claim_settings
        config = get_claim_settings()['ISSUER']

    issuers = {
        'woocommerce': WooCommerceCouponIssuer,
        'dummy': DummyCouponIssuer,
    }

    provider_type = config.get('provider_type', 'dummy')
    if provider_type not in issuers:
        logger.warning(f"Unknown coupon issuer {provider_type!r}, using dummy")
    return issuers.get(provider_type, DummyCouponIssuer)(config)
