"""
tuition_sync/services/ledger_client.py
Ledger Service contract and its HTTP client
"""
from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError as SchemaError

from tuition_sync.core.config import settings
from tuition_sync.core.exceptions import (
    ConflictError, InvariantViolation, LedgerError, RejectionReason, TransportError, ValidationError
)
from tuition_sync.models.schemas import (
    Category, Course, FeeRecordResponse, PaymentDraft, PaymentHistory,
    PaymentTransaction, RecordPaymentResult, Staff
)
import logging

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


# ============================================
# CONTRACT
# ============================================

class LedgerService(ABC):
    """
    Request/response surface of the Ledger Service

    Each operation has exactly one success shape; failures are raised as
    ValidationError, ConflictError, TransportError or InvariantViolation.
    """

    @abstractmethod
    async def record_payment(self, draft: PaymentDraft) -> RecordPaymentResult:
        """Append a payment; retrying with the same draft.payment_id is safe"""

    @abstractmethod
    async def get_fee_record(self, student_id: str) -> FeeRecordResponse:
        ...

    @abstractmethod
    async def list_payments(
        self,
        student_id: Optional[str] = None,
        month: Optional[int] = None,
        year: Optional[int] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None
    ) -> List[PaymentTransaction]:
        ...

    @abstractmethod
    async def update_fee_plan(self, student_id: str, total_fee: Decimal) -> FeeRecordResponse:
        ...

    @abstractmethod
    async def get_payment_history(self, student_id: str) -> PaymentHistory:
        ...

    @abstractmethod
    async def upsert_category(self, category: Category) -> Category:
        ...

    @abstractmethod
    async def upsert_course(self, course: Course) -> Course:
        ...

    @abstractmethod
    async def upsert_staff(self, staff: Staff) -> Staff:
        ...

    @abstractmethod
    async def list_categories(
        self,
        institute_type: Optional[str] = None,
        category_type: Optional[str] = None
    ) -> List[Category]:
        ...

    @abstractmethod
    async def list_courses(
        self,
        institute_type: Optional[str] = None,
        category_id: Optional[str] = None
    ) -> List[Course]:
        ...

    @abstractmethod
    async def list_staff(self, institute_type: Optional[str] = None) -> List[Staff]:
        ...

    async def aclose(self) -> None:
        """Release transport resources"""


# ============================================
# HTTP CLIENT
# ============================================

def _error_from_response(response: httpx.Response) -> LedgerError:
    try:
        detail = response.json().get("detail")
    except (ValueError, AttributeError):
        detail = None

    reason = None
    message = response.text or f"HTTP {response.status_code}"
    if isinstance(detail, dict):
        message = detail.get("message") or message
        try:
            reason = RejectionReason(detail.get("reason"))
        except ValueError:
            reason = None
    elif isinstance(detail, str):
        message = detail

    status = response.status_code
    if status == 409:
        return ConflictError(message, reason=reason)
    if status == 404:
        return ValidationError(message, reason=reason or RejectionReason.UNKNOWN_STUDENT)
    if status in (400, 422):
        return ValidationError(message, reason=reason)
    return TransportError(f"Ledger Service error {status}: {message}")


class HttpLedgerClient(LedgerService):
    """
    LedgerService over the FastAPI routes in api/v1/endpoints

    Args:
        base_url: API root, e.g. "http://localhost:8000/api/v1"
        timeout: Per-request timeout in seconds
        client: Optional pre-built httpx.AsyncClient (tests pass one with a MockTransport)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url or settings.LEDGER_API_URL
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or settings.LEDGER_TIMEOUT_SECONDS
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        parse: Callable[[Any], Any],
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> Any:
        query = {
            key: value.value if isinstance(value, Enum) else value
            for key, value in (params or {}).items() if value is not None
        }
        try:
            response = await self.client.request(method, path, json=json, params=query or None)
        except httpx.TimeoutException as e:
            logger.error(f"Ledger Service timeout on {method} {path}: {e}")
            raise TransportError(f"Ledger Service timed out on {method} {path}") from e
        except httpx.HTTPError as e:
            logger.error(f"Ledger Service unreachable on {method} {path}: {e}")
            raise TransportError(f"Ledger Service unreachable: {e}") from e

        if response.status_code >= 400:
            raise _error_from_response(response)

        try:
            return parse(response.json())
        except (ValueError, TypeError, SchemaError) as e:
            logger.error(f"Malformed Ledger Service response for {method} {path}: {e}")
            raise InvariantViolation(
                f"Malformed Ledger Service response for {method} {path}",
                rule="response_shape"
            ) from e

    @staticmethod
    def _one(model: Type[ModelT]) -> Callable[[Any], ModelT]:
        return model.model_validate

    @staticmethod
    def _many(model: Type[ModelT]) -> Callable[[Any], List[ModelT]]:
        def parse(data: Any) -> List[ModelT]:
            if not isinstance(data, list):
                raise TypeError(f"expected a list of {model.__name__}")
            return [model.model_validate(row) for row in data]
        return parse

    # ============================================
    # FEE LEDGER
    # ============================================

    async def record_payment(self, draft: PaymentDraft) -> RecordPaymentResult:
        return await self._request(
            "POST", "/fees/payments", self._one(RecordPaymentResult),
            json=draft.model_dump(mode="json")
        )

    async def get_fee_record(self, student_id: str) -> FeeRecordResponse:
        return await self._request("GET", f"/fees/records/{student_id}", self._one(FeeRecordResponse))

    async def list_payments(
        self, student_id=None, month=None, year=None, start_date=None, end_date=None
    ) -> List[PaymentTransaction]:
        return await self._request(
            "GET", "/fees/payments", self._many(PaymentTransaction),
            params={
                "student_id": student_id, "month": month, "year": year,
                "start_date": start_date.isoformat() if start_date else None,
                "end_date": end_date.isoformat() if end_date else None
            }
        )

    async def update_fee_plan(self, student_id: str, total_fee: Decimal) -> FeeRecordResponse:
        return await self._request(
            "PUT", f"/fees/records/{student_id}/plan", self._one(FeeRecordResponse),
            json={"total_fee": str(total_fee)}
        )

    async def get_payment_history(self, student_id: str) -> PaymentHistory:
        return await self._request("GET", f"/fees/history/{student_id}", self._one(PaymentHistory))

    # ============================================
    # CATALOG
    # ============================================

    async def _upsert(self, collection: str, record: BaseModel, model: Type[ModelT]) -> ModelT:
        body = record.model_dump(mode="json")
        identity = getattr(record, "identity", None)
        if identity:
            return await self._request("PUT", f"/catalog/{collection}/{identity}", self._one(model), json=body)
        return await self._request("POST", f"/catalog/{collection}", self._one(model), json=body)

    async def upsert_category(self, category: Category) -> Category:
        return await self._upsert("categories", category, Category)

    async def upsert_course(self, course: Course) -> Course:
        return await self._upsert("courses", course, Course)

    async def upsert_staff(self, staff: Staff) -> Staff:
        return await self._upsert("staff", staff, Staff)

    async def list_categories(self, institute_type=None, category_type=None) -> List[Category]:
        return await self._request(
            "GET", "/catalog/categories", self._many(Category),
            params={"institute_type": institute_type, "category_type": category_type}
        )

    async def list_courses(self, institute_type=None, category_id=None) -> List[Course]:
        return await self._request(
            "GET", "/catalog/courses", self._many(Course),
            params={"institute_type": institute_type, "category_id": category_id}
        )

    async def list_staff(self, institute_type=None) -> List[Staff]:
        return await self._request(
            "GET", "/catalog/staff", self._many(Staff),
            params={"institute_type": institute_type}
        )


__all__ = ["LedgerService", "HttpLedgerClient"]
