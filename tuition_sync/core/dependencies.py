from fastapi import HTTPException, status
from tuition_sync.core.config import settings
from tuition_sync.core.exceptions import ConflictError, LedgerError, RejectionReason, ValidationError
from tuition_sync.db.supabase import get_supabase_client, SupabaseQueries
from tuition_sync.models.schemas import LedgerPolicy
from tuition_sync.services.email_service import EmailService
from tuition_sync.services.ledger_store import LedgerStore

email_service = EmailService()

_NOT_FOUND = (RejectionReason.UNKNOWN_STUDENT, RejectionReason.UNKNOWN_ENTITY)


def get_ledger_store() -> LedgerStore:
    """
    Dependency providing the Supabase-backed ledger.
    Tests override it with an in-memory store.
    """
    return LedgerStore(
        SupabaseQueries(get_supabase_client()),
        policy=LedgerPolicy.from_settings(settings),
        email_service=email_service
    )


def ledger_http_error(error: LedgerError) -> HTTPException:
    """
    Map a ledger rejection to the HTTP status the client maps back.
    """
    if isinstance(error, ConflictError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(error, ValidationError):
        code = status.HTTP_404_NOT_FOUND if error.reason in _NOT_FOUND else status.HTTP_400_BAD_REQUEST
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=error.to_detail())
