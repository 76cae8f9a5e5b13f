"""
tuition_sync/api/v1/endpoints/fees.py
Fee ledger endpoints: payments, fee records and payment history
"""
from fastapi import APIRouter, HTTPException, status, Depends, Query
from datetime import date
from typing import List, Optional
from tuition_sync.core.dependencies import get_ledger_store, ledger_http_error
from tuition_sync.core.exceptions import LedgerError
from tuition_sync.models.schemas import (
    FeePlanUpdate, FeeRecordResponse, PaymentDraft, PaymentHistory,
    PaymentTransaction, RecordPaymentResult
)
from tuition_sync.services.ledger_store import LedgerStore
import logging

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/payments", response_model=RecordPaymentResult, status_code=status.HTTP_201_CREATED)
async def record_payment(
    draft: PaymentDraft,
    store: LedgerStore = Depends(get_ledger_store)
):
    """
    Record a payment against a student's fee record.
    - Safe to retry with the same payment_id
    - 409 if the period is already paid or the same payment was just recorded
    """
    try:
        return await store.record_payment(draft)

    except LedgerError as e:
        logger.warning(f"Payment {draft.payment_id} rejected: {e}")
        raise ledger_http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Record payment error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to record payment: {str(e)}"
        )


@router.get("/payments", response_model=List[PaymentTransaction])
async def list_payments(
    student_id: Optional[str] = None,
    month: Optional[int] = Query(None, ge=1, le=12),
    year: Optional[int] = Query(None, ge=2000, le=2100),
    start_date: Optional[date] = Query(None, description="Recorded on or after this day"),
    end_date: Optional[date] = Query(None, description="Recorded on or before this day"),
    store: LedgerStore = Depends(get_ledger_store)
):
    try:
        return await store.list_payments(
            student_id=student_id, month=month, year=year, start_date=start_date, end_date=end_date
        )

    except LedgerError as e:
        raise ledger_http_error(e)
    except Exception as e:
        logger.error(f"List payments error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve payments"
        )


@router.get("/records/{student_id}", response_model=FeeRecordResponse)
async def get_fee_record(
    student_id: str,
    store: LedgerStore = Depends(get_ledger_store)
):
    try:
        return await store.get_fee_record(student_id)

    except LedgerError as e:
        raise ledger_http_error(e)
    except Exception as e:
        logger.error(f"Get fee record error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve fee record"
        )


@router.put("/records/{student_id}/plan", response_model=FeeRecordResponse)
async def update_fee_plan(
    student_id: str,
    plan: FeePlanUpdate,
    store: LedgerStore = Depends(get_ledger_store)
):
    """
    Change a student's total fee. Rejected if it would drop below what is already paid.
    """
    try:
        return await store.update_fee_plan(student_id, plan.total_fee)

    except LedgerError as e:
        logger.warning(f"Fee plan update for {student_id} rejected: {e}")
        raise ledger_http_error(e)
    except Exception as e:
        logger.error(f"Update fee plan error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to update fee plan: {str(e)}"
        )


@router.get("/history/{student_id}", response_model=PaymentHistory)
async def get_payment_history(
    student_id: str,
    store: LedgerStore = Depends(get_ledger_store)
):
    """
    Fee record, every transaction (newest first) and totals for one student
    """
    try:
        return await store.get_payment_history(student_id)

    except LedgerError as e:
        raise ledger_http_error(e)
    except Exception as e:
        logger.error(f"Payment history error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve payment history"
        )
