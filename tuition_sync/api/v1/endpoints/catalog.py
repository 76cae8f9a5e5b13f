from fastapi import APIRouter, HTTPException, status, Depends
from typing import List, Optional
from tuition_sync.core.dependencies import get_ledger_store, ledger_http_error
from tuition_sync.core.exceptions import LedgerError
from tuition_sync.models.schemas import Category, CategoryType, Course, InstituteType, Staff
from tuition_sync.services.ledger_store import LedgerStore
import logging

logger = logging.getLogger(__name__)
router = APIRouter()


async def _write(label: str, operation):
    try:
        return await operation
    except LedgerError as e:
        logger.warning(f"{label} rejected: {e}")
        raise ledger_http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"{label} error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"{label} failed: {str(e)}"
        )


async def _read(label: str, operation):
    try:
        return await operation
    except Exception as e:
        logger.error(f"{label} error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to retrieve {label.lower()}"
        )


# ============================================
# CATEGORIES
# ============================================

@router.get("/categories", response_model=List[Category])
async def list_categories(
    institute_type: Optional[InstituteType] = None,
    category_type: Optional[CategoryType] = None,
    store: LedgerStore = Depends(get_ledger_store)
):
    return await _read("Categories", store.list_categories(institute_type, category_type))


@router.post("/categories", response_model=Category, status_code=status.HTTP_201_CREATED)
async def create_category(category: Category, store: LedgerStore = Depends(get_ledger_store)):
    return await _write("Create category", store.upsert_category(category.with_identity(None)))


@router.put("/categories/{category_id}", response_model=Category)
async def update_category(category_id: str, category: Category, store: LedgerStore = Depends(get_ledger_store)):
    return await _write("Update category", store.upsert_category(category.with_identity(category_id)))


# ============================================
# COURSES
# ============================================

@router.get("/courses", response_model=List[Course])
async def list_courses(
    institute_type: Optional[InstituteType] = None,
    category_id: Optional[str] = None,
    store: LedgerStore = Depends(get_ledger_store)
):
    return await _read("Courses", store.list_courses(institute_type, category_id))


@router.post("/courses", response_model=Course, status_code=status.HTTP_201_CREATED)
async def create_course(course: Course, store: LedgerStore = Depends(get_ledger_store)):
    return await _write("Create course", store.upsert_course(course.with_identity(None)))


@router.put("/courses/{course_id}", response_model=Course)
async def update_course(course_id: str, course: Course, store: LedgerStore = Depends(get_ledger_store)):
    return await _write("Update course", store.upsert_course(course.with_identity(course_id)))


# ============================================
# STAFF
# ============================================

@router.get("/staff", response_model=List[Staff])
async def list_staff(
    institute_type: Optional[InstituteType] = None,
    store: LedgerStore = Depends(get_ledger_store)
):
    return await _read("Staff", store.list_staff(institute_type))


@router.post("/staff", response_model=Staff, status_code=status.HTTP_201_CREATED)
async def create_staff(staff: Staff, store: LedgerStore = Depends(get_ledger_store)):
    return await _write("Create staff", store.upsert_staff(staff.with_identity(None)))


@router.put("/staff/{staff_id}", response_model=Staff)
async def update_staff(staff_id: str, staff: Staff, store: LedgerStore = Depends(get_ledger_store)):
    return await _write("Update staff", store.upsert_staff(staff.with_identity(staff_id)))
