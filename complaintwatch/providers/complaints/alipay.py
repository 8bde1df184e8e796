from __future__ import annotations

import base64
import hashlib
import json
import logging
import time
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import SignatureAlgorithmOID

from complaintwatch.core.config import PROVIDER_MAX_PAGE_SIZE
from complaintwatch.core.errors import ProviderCallFailed, ProviderConfigError
from complaintwatch.providers.complaints.base import (
    PROVIDER_TIME_FORMAT,
    PROVIDER_TZ,
    ComplaintDetailResult,
    ComplaintListItem,
    ComplaintPage,
    OrderLine,
    QueryWindow,
)
from complaintwatch.services.telemetry import Telemetry


logger = logging.getLogger(__name__)

BATCH_QUERY_METHOD = "alipay.security.risk.complaint.info.batchquery"
DETAIL_QUERY_METHOD = "alipay.security.risk.complaint.info.query"
SUCCESS_CODE = "10000"
_ROOT_CERT_ALGORITHMS = {SignatureAlgorithmOID.RSA_WITH_SHA1, SignatureAlgorithmOID.RSA_WITH_SHA256}


def _wrap_pem(value: str, label: str) -> bytes:
    stripped = value.strip()
    if stripped.startswith("-----BEGIN"):
        return stripped.encode("utf-8")
    body = "\n".join(stripped[i : i + 64] for i in range(0, len(stripped), 64))
    return f"-----BEGIN {label}-----\n{body}\n-----END {label}-----\n".encode("utf-8")


def load_private_key(value: str) -> rsa.RSAPrivateKey:
    # Merchant keys are usually bare base64 PKCS#8, sometimes PKCS#1.
    last_error: Exception | None = None
    for label in ("PRIVATE KEY", "RSA PRIVATE KEY"):
        try:
            key = serialization.load_pem_private_key(_wrap_pem(value, label), password=None)
        except (ValueError, TypeError) as exc:
            last_error = exc
            continue
        if not isinstance(key, rsa.RSAPrivateKey):
            raise ProviderConfigError("application private key is not an RSA key")
        return key
    raise ProviderConfigError("application private key could not be loaded") from last_error


def _cert_sn(cert: x509.Certificate) -> str:
    issuer = cert.issuer.rfc4514_string()
    return hashlib.md5(f"{issuer}{cert.serial_number}".encode("utf-8")).hexdigest()


def app_cert_sn(value: str) -> str:
    try:
        cert = x509.load_pem_x509_certificate(_wrap_pem(value, "CERTIFICATE"))
    except ValueError as exc:
        raise ProviderConfigError("application public certificate could not be parsed") from exc
    return _cert_sn(cert)


def root_cert_sn(value: str) -> str:
    # The root bundle mixes RSA and SM2 certs; only the RSA ones count towards the serial.
    try:
        certs = x509.load_pem_x509_certificates(_wrap_pem(value, "CERTIFICATE"))
    except ValueError as exc:
        raise ProviderConfigError("provider root certificate could not be parsed") from exc
    serials = [_cert_sn(cert) for cert in certs if cert.signature_algorithm_oid in _ROOT_CERT_ALGORITHMS]
    if not serials:
        raise ProviderConfigError("provider root certificate bundle has no RSA certificates")
    return "_".join(serials)


def build_sign_content(params: dict[str, str]) -> str:
    items = sorted((key, value) for key, value in params.items() if key != "sign" and value not in ("", None))
    return "&".join(f"{key}={value}" for key, value in items)


def _to_decimal(value: Any) -> Decimal:
    if value in (None, ""):
        return Decimal("0")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")


class AlipayComplaintClient:
    """Complaint API client for one tenant, signing every call in certificate mode."""

    def __init__(
        self,
        *,
        app_id: str,
        private_key: rsa.RSAPrivateKey,
        app_cert_sn: str,
        root_cert_sn: str,
        http: httpx.AsyncClient,
        gateway_url: str,
        timeout_s: float,
        telemetry: Telemetry | None = None,
    ) -> None:
        self.app_id = app_id
        self._private_key = private_key
        self._app_cert_sn = app_cert_sn
        self._root_cert_sn = root_cert_sn
        self._http = http
        self._gateway_url = gateway_url
        self._timeout_s = timeout_s
        self._telemetry = telemetry

    @classmethod
    def from_material(
        cls,
        *,
        app_id: str,
        private_key: str,
        app_public_cert: str,
        alipay_root_cert: str,
        http: httpx.AsyncClient,
        gateway_url: str,
        timeout_s: float,
        telemetry: Telemetry | None = None,
    ) -> AlipayComplaintClient:
        # Only derived values are kept; the PEM strings stay with the caller.
        return cls(
            app_id=app_id,
            private_key=load_private_key(private_key),
            app_cert_sn=app_cert_sn(app_public_cert),
            root_cert_sn=root_cert_sn(alipay_root_cert),
            http=http,
            gateway_url=gateway_url,
            timeout_s=timeout_s,
            telemetry=telemetry,
        )

    def _sign(self, content: str) -> str:
        signature = self._private_key.sign(content.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
        return base64.b64encode(signature).decode("ascii")

    def _build_params(self, method: str, biz_content: dict[str, Any]) -> dict[str, str]:
        params = {
            "app_id": self.app_id,
            "method": method,
            "format": "JSON",
            "charset": "utf-8",
            "sign_type": "RSA2",
            "timestamp": datetime.now(PROVIDER_TZ).strftime(PROVIDER_TIME_FORMAT),
            "version": "1.0",
            "app_cert_sn": self._app_cert_sn,
            "alipay_root_cert_sn": self._root_cert_sn,
            "biz_content": json.dumps(biz_content, ensure_ascii=False, separators=(",", ":")),
        }
        params["sign"] = self._sign(build_sign_content(params))
        return params

    def _record(self, method: str, success: bool) -> None:
        if self._telemetry is not None:
            outcome = "ok" if success else "failed"
            self._telemetry.increment_counter(f"provider.{method.rsplit('.', 1)[-1]}.{outcome}")

    async def _call(self, method: str, biz_content: dict[str, Any]) -> dict[str, Any]:
        params = self._build_params(method, biz_content)
        start = time.monotonic()
        try:
            response = await self._http.post(
                self._gateway_url,
                data=params,
                timeout=self._timeout_s,
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            self._record(method, False)
            raise ProviderCallFailed(method, exc.__class__.__name__) from exc

        payload = body.get(method.replace(".", "_") + "_response") or {}
        code = str(payload.get("code", ""))
        latency_ms = (time.monotonic() - start) * 1000.0
        if code != SUCCESS_CODE:
            self._record(method, False)
            message = payload.get("msg", "") or "empty response"
            if payload.get("sub_msg"):
                message = f"{message} - {payload['sub_msg']}"
            logger.warning(
                "provider_call_rejected app_id=%s method=%s code=%s sub_code=%s latency_ms=%.1f",
                self.app_id,
                method,
                code,
                payload.get("sub_code", ""),
                latency_ms,
            )
            raise ProviderCallFailed(method, message, code=code or None)
        self._record(method, True)
        logger.debug("provider_call_ok app_id=%s method=%s latency_ms=%.1f", self.app_id, method, latency_ms)
        return payload

    async def list_complaints(self, window: QueryWindow, page: int, page_size: int) -> ComplaintPage:
        payload = await self._call(
            BATCH_QUERY_METHOD,
            {
                "gmt_complaint_start": window.start,
                "gmt_complaint_end": window.end,
                "current_page_num": page,
                "page_size": min(page_size, PROVIDER_MAX_PAGE_SIZE),
            },
        )
        items = []
        for raw in payload.get("complaint_list") or []:
            complaint_id = int(raw.get("id") or 0)
            items.append(
                ComplaintListItem(
                    complaint_id=complaint_id,
                    # Older complaints may lack a task id; the numeric id stands in.
                    task_id=str(raw.get("task_id") or (complaint_id or "")),
                    status=str(raw.get("status") or ""),
                    complainant_id=str(raw.get("opposite_pid") or ""),
                    gmt_create=str(raw.get("gmt_complain") or ""),
                    gmt_modified=str(raw.get("gmt_process") or ""),
                )
            )
        return ComplaintPage(items=items, total=int(payload.get("total_size") or 0))

    async def get_complaint_detail(self, complaint_id: int) -> ComplaintDetailResult:
        payload = await self._call(DETAIL_QUERY_METHOD, {"complain_id": complaint_id})
        lines = []
        for raw in payload.get("complaint_trade_info_list") or []:
            amount = _to_decimal(raw.get("amount"))
            lines.append(
                OrderLine(
                    merchant_order_no=str(raw.get("out_no") or ""),
                    platform_order_no=str(raw.get("trade_no") or ""),
                    amount=amount,
                    # No per-line complaint amount is returned; the whole trade is disputed.
                    complaint_amount=amount,
                )
            )
        return ComplaintDetailResult(
            task_id=str(payload.get("task_id") or ""),
            status=str(payload.get("status") or ""),
            complainant_id=str(payload.get("opposite_pid") or ""),
            complainant_name=str(payload.get("opposite_name") or ""),
            reason=str(payload.get("complain_content") or ""),
            gmt_create=str(payload.get("gmt_complain") or ""),
            gmt_modified=str(payload.get("gmt_process") or ""),
            order_lines=lines,
        )
