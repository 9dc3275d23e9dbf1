"""AliExpress dropshipping client.

Every call is a form-encoded POST whose parameters are signed with
HMAC-SHA256 over the alphabetically sorted ``key + value`` pairs, keyed with
the app secret, as an uppercase hex digest in the ``sign`` field.
"""

import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal

import httpx
import structlog

from dropship.config import Settings, get_settings
from dropship.credentials import CredentialStore, credential_store
from dropship.errors import CredentialError, InvalidInput, SupplierError

logger = structlog.get_logger(__name__)

ORDER_CREATE = "aliexpress.ds.order.create"
ORDER_GET = "aliexpress.trade.ds.order.get"

PENDING_TRACKING = "PENDING"


@dataclass(frozen=True)
class SupplierOrder:
    order_id: str
    tracking_number: str | None
    order_cost: Decimal

    @property
    def has_tracking(self) -> bool:
        return bool(self.tracking_number) and self.tracking_number != PENDING_TRACKING


def sign_params(params: dict, secret: str) -> str:
    payload = "".join(
        f"{key}{params[key]}" for key in sorted(params) if key != "sign"
    )
    digest = hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256)
    return digest.hexdigest().upper()


def to_logistics_address(shipping: dict | None) -> dict | None:
    """Map a checkout or Stripe shaped address to the supplier's fields."""
    if not shipping:
        return None

    if isinstance(shipping.get("address"), dict):
        addr = shipping["address"]
        return {
            "contact_person": shipping.get("name") or "",
            "full_name": shipping.get("name") or "",
            "address": addr.get("line1") or "",
            "address2": addr.get("line2") or "",
            "city": addr.get("city") or "",
            "province": addr.get("state") or "",
            "zip": addr.get("postal_code") or "",
            "country": addr.get("country") or "",
            "mobile_no": shipping.get("phone") or "",
            "phone_country": "+",
        }

    name = " ".join(
        part for part in (shipping.get("firstName"), shipping.get("lastName")) if part
    ) or shipping.get("name", "")
    return {
        "contact_person": name,
        "full_name": name,
        "address": shipping.get("address1") or shipping.get("address") or "",
        "address2": shipping.get("address2") or "",
        "city": shipping.get("city") or "",
        "province": shipping.get("state") or shipping.get("province") or "",
        "zip": shipping.get("zip") or shipping.get("postal_code") or "",
        "country": shipping.get("country") or "",
        "mobile_no": shipping.get("phone") or "",
        "phone_country": "+",
    }


def _result_node(data: dict) -> dict | None:
    if isinstance(data.get("result"), dict):
        return data["result"]
    for key, value in data.items():
        if key.endswith("_response") and isinstance(value, dict):
            result = value.get("result")
            if isinstance(result, dict):
                return result
    return None


def _first_tracking(result: dict) -> str | None:
    waybills = result.get("waybill_no_list") or []
    if isinstance(waybills, dict):
        waybills = waybills.get("waybill_no") or []
    for waybill in waybills:
        number = waybill.get("mail_no") if isinstance(waybill, dict) else waybill
        if number:
            return str(number)

    logistics = (result.get("logistic_info_list") or {}).get("ae_order_logistics_info") or []
    for info in logistics:
        if info.get("logistics_no"):
            return str(info["logistics_no"])

    if result.get("tracking_no"):
        return str(result["tracking_no"])
    return None


def _order_id(result: dict) -> str | None:
    order_id = result.get("trade_order_id")
    if order_id is None:
        order_list = result.get("order_list") or {}
        if isinstance(order_list, dict):
            order_list = order_list.get("number") or []
        if order_list:
            order_id = order_list[0]
    return str(order_id) if order_id is not None else None


class SupplierClient:
    def __init__(self, credentials: CredentialStore | None = None,
                 http: httpx.Client | None = None, settings: Settings | None = None):
        self.credentials = credentials or credential_store
        self._http = http
        self._settings = settings

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    def _client(self) -> httpx.Client:
        if self._http is None:
            self._http = httpx.Client(timeout=30.0)
        return self._http

    def _token(self) -> str:
        try:
            return self.credentials.get_valid_token()
        except CredentialError as exc:
            raise SupplierError("credential", str(exc)) from exc

    def _post(self, url: str, params: dict) -> dict:
        settings = self.settings
        params = {
            "app_key": settings.ali_app_key or "",
            "timestamp": str(int(time.time() * 1000)),
            "sign_method": "sha256",
            **params,
        }
        params["sign"] = sign_params(params, settings.ali_app_secret or "")

        try:
            response = self._client().post(
                url,
                data=params,
                headers={"Content-Type": "application/x-www-form-urlencoded;charset=utf-8"},
            )
        except httpx.HTTPError as exc:
            raise SupplierError("transport", str(exc)) from exc

        if not response.is_success:
            raise SupplierError(str(response.status_code), response.text[:200])
        try:
            data = response.json()
        except ValueError as exc:
            raise SupplierError("bad_response", "non-JSON response") from exc

        if not isinstance(data, dict):
            raise SupplierError("bad_response", "unexpected response shape")
        if data.get("error_response"):
            err = data["error_response"]
            raise SupplierError(str(err.get("code", "unknown")), err.get("msg", ""))
        return data

    def _call(self, method: str, params: dict) -> dict:
        return self._post(
            self.settings.ali_api_url,
            {"method": method, "access_token": self._token(), **params},
        )

    def place_order(self, items: list[dict], shipping: dict | None = None) -> SupplierOrder:
        """Create and pay a supplier order for ``[{id, quantity, sku_attr?}]``."""
        if not items:
            raise InvalidInput("No items passed to supplier order")

        test_mode = self.settings.ali_test_environment
        request = {
            "product_items": [
                {
                    "product_id": str(item["id"]),
                    "product_count": 0 if test_mode else int(item["quantity"]),
                    "sku_attr": item.get("sku_attr") or "",
                }
                for item in items
            ],
        }
        address = to_logistics_address(shipping)
        if address:
            request["logistics_address"] = address

        data = self._call(ORDER_CREATE, {
            "param_place_order_request4_open_api_d_t_o": json.dumps(request),
            "uuid": str(uuid.uuid4()),
        })

        result = _result_node(data)
        if result is None:
            raise SupplierError("bad_response", "Unexpected supplier response format")
        if result.get("is_success") is False:
            raise SupplierError(
                str(result.get("error_code", "order_failed")),
                result.get("error_msg", ""),
            )
        order_id = _order_id(result)
        if not order_id:
            raise SupplierError("bad_response", "Supplier response has no order id")

        order = SupplierOrder(
            order_id=order_id,
            tracking_number=_first_tracking(result),
            order_cost=Decimal(str(result.get("order_amount") or 0)) / 100,
        )
        logger.info(
            "supplier_order_placed",
            order_id=order.order_id,
            tracking=order.tracking_number,
            cost=str(order.order_cost),
        )
        return order

    def get_order_tracking(self, order_id: str) -> str | None:
        data = self._call(ORDER_GET, {
            "single_order_query": json.dumps({"order_id": str(order_id)}),
        })
        result = _result_node(data)
        if result is None:
            return None
        tracking = _first_tracking(result)
        if tracking == PENDING_TRACKING:
            return None
        return tracking

    def exchange_code(self, code: str) -> dict:
        """Trade an OAuth authorization code for a token payload."""
        data = self._post(self.settings.ali_token_url, {"code": code, "uuid": str(uuid.uuid4())})
        if data.get("error_msg"):
            raise SupplierError("oauth", data["error_msg"])
        if not data.get("access_token"):
            raise SupplierError("oauth", f"No access token in response: {json.dumps(data)}")
        return data


supplier_client = SupplierClient()
