"""
Amazon Ads Reporting API v3 client (direct HTTP via httpx).

Three operations back the sync pipeline:
  request_report     POST /reporting/reports          -> reportId
  get_report_status  GET  /reporting/reports/{id}     -> ReportStatus
  download_report    GET  <pre-signed url>            -> gzip bytes

Non-2xx responses raise a ReportingApiError subclass chosen by HTTP status so
callers can decide whether a failure is worth retrying.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

API_BASE_URLS = {
    "na": "https://advertising-api.amazon.com",
    "eu": "https://advertising-api-eu.amazon.com",
    "fe": "https://advertising-api-fe.amazon.com",
}

REPORT_CONTENT_TYPE = "application/vnd.createasyncreportrequest.v3+json"


# ══════════════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════════════

class ErrorClass(str, enum.Enum):
    AUTHORIZATION = "authorization"
    THROTTLING = "throttling"
    CREDENTIAL_EXPIRED = "credential_expired"
    SERVER = "server"
    UNKNOWN = "unknown"


class ReportingApiError(Exception):
    """Reporting API call failed."""
    error_class = ErrorClass.UNKNOWN

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.error_class != ErrorClass.AUTHORIZATION

    def __str__(self) -> str:
        msg = super().__str__()
        return f"[{self.status_code}] {msg}" if self.status_code else msg


class AuthorizationError(ReportingApiError):
    """403: the credential may not access this profile. Never retried."""
    error_class = ErrorClass.AUTHORIZATION


class ThrottlingError(ReportingApiError):
    error_class = ErrorClass.THROTTLING


class CredentialExpiredError(ReportingApiError):
    """401: access token rejected; refresh and try again."""
    error_class = ErrorClass.CREDENTIAL_EXPIRED


class ServerError(ReportingApiError):
    error_class = ErrorClass.SERVER


def error_for_status(status_code: int, message: str) -> ReportingApiError:
    if status_code == 403:
        return AuthorizationError(message, status_code)
    if status_code == 429:
        return ThrottlingError(message, status_code)
    if status_code == 401:
        return CredentialExpiredError(message, status_code)
    if status_code >= 500:
        return ServerError(message, status_code)
    return ReportingApiError(message, status_code)


def classify_error(exc: BaseException) -> ErrorClass:
    if isinstance(exc, ReportingApiError):
        return exc.error_class
    if isinstance(exc, httpx.HTTPStatusError):
        return error_for_status(exc.response.status_code, str(exc)).error_class
    if isinstance(exc, httpx.TransportError):
        return ErrorClass.SERVER
    return ErrorClass.UNKNOWN


# ══════════════════════════════════════════════════════════════════════
#  CLIENT
# ══════════════════════════════════════════════════════════════════════

@dataclass
class ReportStatus:
    report_id: str
    status: str  # PENDING | PROCESSING | COMPLETED | FAILED
    url: Optional[str] = None
    failure_reason: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return self.status == "COMPLETED" and bool(self.url)

    @property
    def is_failed(self) -> bool:
        return self.status in ("FAILED", "CANCELLED")


class AmazonAdsReportingClient:
    """One client per (credential, profile). Reuses a single httpx.AsyncClient."""

    def __init__(
        self,
        client_id: str,
        access_token: str,
        profile_id: Optional[str] = None,
        region: str = "na",
        timeout: float = 60.0,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.client_id = client_id
        self.access_token = access_token
        self.profile_id = profile_id
        self.region = region
        self.base_url = API_BASE_URLS.get(region, API_BASE_URLS["na"])
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http is None

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "AmazonAdsReportingClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    def _headers(self, content_type: Optional[str] = None) -> dict:
        headers = {
            "Amazon-Advertising-API-ClientId": self.client_id,
            "Authorization": f"Bearer {self.access_token}",
        }
        if content_type:
            headers["Content-Type"] = content_type
            headers["Accept"] = content_type
        if self.profile_id:
            headers["Amazon-Advertising-API-Scope"] = str(self.profile_id)
        return headers

    @staticmethod
    def _raise_for_response(resp: httpx.Response, action: str) -> None:
        if resp.status_code < 400:
            return
        detail = resp.text[:500]
        try:
            body = resp.json()
            if isinstance(body, dict):
                detail = body.get("detail") or body.get("message") or body.get("code") or detail
        except ValueError:
            pass
        logger.warning(f"Reporting API {action} failed: {resp.status_code} - {detail}")
        raise error_for_status(resp.status_code, f"{action} failed: {detail}")

    async def request_report(
        self,
        report_type_id: str,
        ad_product: str,
        start_date: date,
        end_date: date,
        columns: list[str],
        group_by: list[str],
        time_unit: str = "DAILY",
    ) -> str:
        body = {
            "name": f"{report_type_id} {start_date.isoformat()}..{end_date.isoformat()}",
            "startDate": start_date.isoformat(),
            "endDate": end_date.isoformat(),
            "configuration": {
                "adProduct": ad_product,
                "reportTypeId": report_type_id,
                "groupBy": list(group_by),
                "columns": list(columns),
                "timeUnit": time_unit,
                "format": "GZIP_JSON",
            },
        }
        try:
            resp = await self._http.post(
                f"{self.base_url}/reporting/reports",
                json=body,
                headers=self._headers(REPORT_CONTENT_TYPE),
            )
        except httpx.TransportError as e:
            raise ServerError(f"create report transport error: {e}") from e
        self._raise_for_response(resp, "create report")

        report_id = resp.json().get("reportId")
        if not report_id:
            raise ReportingApiError(f"create report returned no reportId: {resp.text[:200]}", resp.status_code)
        logger.info(f"Requested {report_type_id} ({ad_product}) {start_date}..{end_date}: report {report_id}")
        return report_id

    async def get_report_status(self, report_id: str) -> ReportStatus:
        try:
            resp = await self._http.get(
                f"{self.base_url}/reporting/reports/{report_id}",
                headers=self._headers(REPORT_CONTENT_TYPE),
            )
        except httpx.TransportError as e:
            raise ServerError(f"get report transport error: {e}") from e
        self._raise_for_response(resp, "get report")

        data = resp.json()
        return ReportStatus(
            report_id=data.get("reportId", report_id),
            status=(data.get("status") or "PENDING").upper(),
            url=data.get("url"),
            failure_reason=data.get("failureReason"),
        )

    async def download_report(self, url: str) -> bytes:
        """Fetch the raw (gzip-compressed) report document from its pre-signed URL."""
        try:
            resp = await self._http.get(url)
        except httpx.TransportError as e:
            raise ServerError(f"download transport error: {e}") from e
        self._raise_for_response(resp, "download report")
        return resp.content
