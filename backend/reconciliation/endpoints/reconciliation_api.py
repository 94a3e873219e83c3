"""
Reconciliation API Endpoints

REST API for the reconciliation engine:
- POST /api/reconciliation/upload - Upload a bank statement, start a batch
- GET /api/reconciliation/{batch_id} - Batch progress
- GET /api/reconciliation/{batch_id}/transactions - Paginated transactions + stats
- GET /api/reconciliation/{batch_id}/stats - Batch statistics
- POST /api/reconciliation/{batch_id}/bulk-confirm - Confirm all auto-matched
- POST /api/reconciliation/invoice - Create an invoice
- POST /api/invoices/upload - Upload an invoice CSV
- POST /api/invoices/rebuild-index - Rebuild the invoice index
- POST /api/transactions/{id}/confirm | reject | match | external - Operator actions
- GET /api/transactions/{id}/audit - Match audit trail
"""

import logging
import os
import uuid
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, File, Header, HTTPException, Query, Request, UploadFile, status
from pydantic import BaseModel, Field

from sentry_integration import capture_exception
from reconciliation.errors import ReconciliationError
from reconciliation.models import InvoiceStatus
from reconciliation.row_parser import parse_date, read_csv_rows, remove_file
from reconciliation.services.reconciliation_service import ReconciliationService
from utils.validation_errors import (
    raise_invalid_parameter,
    raise_reconciliation_error,
    validate_optional_uuid,
    validate_required_uuid,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])
transactions_router = APIRouter(prefix="/transactions", tags=["Transactions"])
invoices_router = APIRouter(prefix="/invoices", tags=["Invoices"])


# ==================== Request Models ====================

class CreateInvoiceRequest(BaseModel):
    """Request to create an invoice."""
    invoice_number: Optional[str] = Field(default=None, description="Unique invoice number (generated when empty)")
    customer_name: str = Field(..., description="Customer name matched against statement descriptions")
    customer_email: Optional[str] = Field(default=None, description="Customer email")
    amount: Decimal = Field(..., description="Invoice amount")
    due_date: str = Field(..., description="Due date, DD-MM-YYYY")
    status: str = Field(default=InvoiceStatus.SENT.value, description="draft, sent, overdue or paid")


class RejectMatchRequest(BaseModel):
    """Request to reject a match."""
    reason: Optional[str] = Field(default=None, description="Rejection reason")


class ManualMatchRequest(BaseModel):
    """Request to assign an invoice manually."""
    invoice_id: str = Field(..., description="Invoice to assign")
    reason: Optional[str] = Field(default=None, description="Why the match was made by hand")


class MarkExternalRequest(BaseModel):
    """Request to take a transaction out of invoice matching."""
    reason: Optional[str] = Field(default=None, description="Why the transaction is external")


# ==================== Dependencies ====================

def get_reconciliation_service(request: Request) -> ReconciliationService:
    """The service instance built by the application lifespan."""
    return request.app.state.reconciliation_service


async def _store_upload(request: Request, file: UploadFile) -> str:
    """Persist an uploaded file under the upload directory and return its path."""
    if not file.filename:
        raise_invalid_parameter("file", "An uploaded file is required")

    content = await file.read()
    max_bytes = request.app.state.upload_max_bytes
    if len(content) > max_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds the {max_bytes // (1024 * 1024)} MB upload limit"
        )

    upload_dir = request.app.state.upload_dir
    os.makedirs(upload_dir, exist_ok=True)

    safe_name = os.path.basename(file.filename)
    file_path = os.path.join(upload_dir, f"{uuid.uuid4()}_{safe_name}")
    with open(file_path, "wb") as f:
        f.write(content)

    logger.info(f"Stored upload {safe_name} ({len(content)} bytes) at {file_path}")
    return file_path


# ==================== Reconciliation Endpoints ====================

@router.post("/upload", status_code=status.HTTP_202_ACCEPTED, summary="Upload bank statement")
async def upload_bank_statement(
    request: Request,
    file: UploadFile = File(...),
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """
    Upload a bank statement CSV and start reconciling it.

    Returns immediately with the batch id; poll the batch for progress.
    """
    try:
        file_path = await _store_upload(request, file)
        try:
            # the worker deletes the file once it has read the last row
            batch = await service.start_batch_upload(
                os.path.basename(file.filename),
                read_csv_rows(file_path, remove_after=True),
            )
        except Exception:
            remove_file(file_path)
            raise

        return {
            "batch_id": batch.id,
            "filename": batch.filename,
            "status": batch.status.value,
        }

    except HTTPException:
        raise
    except ReconciliationError as e:
        raise_reconciliation_error(e)
    except Exception as e:
        logger.error(f"Failed to start reconciliation batch: {e}")
        capture_exception(e, filename=file.filename)
        raise HTTPException(status_code=500, detail="Failed to start reconciliation batch")


@router.post("/invoice", status_code=status.HTTP_201_CREATED, summary="Create invoice")
async def create_invoice(
    request: CreateInvoiceRequest,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Create an invoice. An existing invoice number returns the stored invoice."""
    due_date = parse_date(request.due_date)
    if due_date is None:
        raise_invalid_parameter("due_date", "due_date must be DD-MM-YYYY", request.due_date)

    try:
        invoice_status = InvoiceStatus(request.status.lower())
    except ValueError:
        raise_invalid_parameter(
            "status",
            f"Invalid status. Valid values: {[s.value for s in InvoiceStatus]}",
            request.status
        )

    try:
        invoice = await service.create_invoice(
            customer_name=request.customer_name,
            amount=request.amount,
            due_date=due_date,
            invoice_number=request.invoice_number,
            customer_email=request.customer_email,
            status=invoice_status,
        )
        return invoice.to_dict()

    except HTTPException:
        raise
    except ReconciliationError as e:
        raise_reconciliation_error(e)
    except Exception as e:
        logger.error(f"Failed to create invoice: {e}")
        capture_exception(e)
        raise HTTPException(status_code=500, detail="Failed to create invoice")


@router.get("/{batch_id}", summary="Batch progress")
async def get_batch_progress(
    batch_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Processed count, total and status (processing/completed) of a batch."""
    validate_required_uuid(batch_id, "batch_id")

    try:
        progress = await service.get_batch_progress(batch_id)
        return {"batch_id": batch_id, **progress.to_dict()}

    except HTTPException:
        raise
    except ReconciliationError as e:
        raise_reconciliation_error(e)
    except Exception as e:
        logger.error(f"Failed to get progress of batch {batch_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to get batch progress")


@router.get("/{batch_id}/transactions", summary="List batch transactions")
async def list_batch_transactions(
    batch_id: str,
    status_filter: Optional[str] = Query(default=None, alias="status", description="Transaction status or 'all'"),
    cursor: Optional[str] = Query(default=None, description="next_cursor from the previous page"),
    limit: Optional[int] = Query(default=None, description="Page size"),
    search: Optional[str] = Query(default=None, description="Match on description or amount"),
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """
    One page of a batch's transactions, ordered by id, with the batch stats.
    """
    validate_required_uuid(batch_id, "batch_id")
    validate_optional_uuid(cursor, "cursor")

    try:
        return await service.list_transactions(
            batch_id,
            status=status_filter,
            cursor=cursor,
            limit=limit,
            search=search,
        )

    except HTTPException:
        raise
    except ReconciliationError as e:
        raise_reconciliation_error(e)
    except Exception as e:
        logger.error(f"Failed to list transactions of batch {batch_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to list transactions")


@router.get("/{batch_id}/stats", summary="Batch statistics")
async def get_batch_stats(
    batch_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Count and amount per outcome for a batch."""
    validate_required_uuid(batch_id, "batch_id")

    try:
        stats = await service.get_batch_stats(batch_id)
        return {"batch_id": batch_id, **stats.to_dict()}

    except HTTPException:
        raise
    except ReconciliationError as e:
        raise_reconciliation_error(e)
    except Exception as e:
        logger.error(f"Failed to get stats of batch {batch_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to get batch stats")


@router.post("/{batch_id}/bulk-confirm", summary="Confirm all auto-matched transactions")
async def bulk_confirm(
    batch_id: str,
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Move every auto_matched transaction of the batch to confirmed."""
    validate_required_uuid(batch_id, "batch_id")

    try:
        updated = await service.bulk_confirm_auto_matched(batch_id, actor=x_user_id or "system")
        return {"batch_id": batch_id, "transactions_updated": updated}

    except HTTPException:
        raise
    except ReconciliationError as e:
        raise_reconciliation_error(e)
    except Exception as e:
        logger.error(f"Bulk confirm of batch {batch_id} failed: {e}")
        capture_exception(e, batch_id=batch_id)
        raise HTTPException(status_code=500, detail="Bulk confirm failed")


# ==================== Invoice Endpoints ====================

@invoices_router.post("/upload", summary="Upload invoice CSV")
async def upload_invoices(
    request: Request,
    file: UploadFile = File(...),
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """
    Upload invoices from CSV.

    Columns: row id, invoice number, customer name, customer email, amount,
    status, due date. The invoice index is rebuilt once afterwards.
    """
    try:
        file_path = await _store_upload(request, file)
        try:
            result = await service.upload_invoices(read_csv_rows(file_path))
        finally:
            remove_file(file_path)
        return {"file": os.path.basename(file.filename), **result}

    except HTTPException:
        raise
    except ReconciliationError as e:
        raise_reconciliation_error(e)
    except Exception as e:
        logger.error(f"Invoice upload failed: {e}")
        capture_exception(e, filename=file.filename)
        raise HTTPException(status_code=500, detail="Invoice upload failed")


@invoices_router.post("/rebuild-index", summary="Rebuild invoice index")
async def rebuild_invoice_index(
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Reload every invoice into the in-memory amount index."""
    try:
        return await service.rebuild_invoice_index()
    except Exception as e:
        logger.error(f"Invoice index rebuild failed: {e}")
        capture_exception(e)
        raise HTTPException(status_code=500, detail="Invoice index rebuild failed")


# ==================== Transaction Endpoints ====================

@transactions_router.post("/{transaction_id}/confirm", summary="Confirm a match")
async def confirm_transaction(
    transaction_id: str,
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Accept the transaction's current invoice match."""
    validate_required_uuid(transaction_id, "transaction_id")

    try:
        tx = await service.confirm_transaction(transaction_id, actor=x_user_id or "system")
        return tx.to_dict()

    except HTTPException:
        raise
    except ReconciliationError as e:
        raise_reconciliation_error(e)
    except Exception as e:
        logger.error(f"Failed to confirm transaction {transaction_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to confirm transaction")


@transactions_router.post("/{transaction_id}/reject", summary="Reject a match")
async def reject_transaction(
    transaction_id: str,
    request: Optional[RejectMatchRequest] = None,
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Reject the current match; the transaction becomes unmatched."""
    validate_required_uuid(transaction_id, "transaction_id")

    try:
        tx = await service.reject_transaction(
            transaction_id,
            actor=x_user_id or "system",
            reason=request.reason if request else None
        )
        return tx.to_dict()

    except HTTPException:
        raise
    except ReconciliationError as e:
        raise_reconciliation_error(e)
    except Exception as e:
        logger.error(f"Failed to reject transaction {transaction_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to reject transaction")


@transactions_router.post("/{transaction_id}/match", summary="Manually match an invoice")
async def manual_match_transaction(
    transaction_id: str,
    request: ManualMatchRequest,
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Assign an invoice chosen by the operator; the transaction becomes confirmed."""
    validate_required_uuid(transaction_id, "transaction_id")
    validate_required_uuid(request.invoice_id, "invoice_id")

    try:
        tx = await service.manual_match_transaction(
            transaction_id,
            request.invoice_id,
            actor=x_user_id or "system",
            reason=request.reason
        )
        return tx.to_dict()

    except HTTPException:
        raise
    except ReconciliationError as e:
        raise_reconciliation_error(e)
    except Exception as e:
        logger.error(f"Failed to match transaction {transaction_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to match transaction")


@transactions_router.post("/{transaction_id}/external", summary="Mark transaction external")
async def mark_transaction_external(
    transaction_id: str,
    request: Optional[MarkExternalRequest] = None,
    x_user_id: Optional[str] = Header(default="system", alias="X-User-Id"),
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Take the transaction out of invoice matching."""
    validate_required_uuid(transaction_id, "transaction_id")

    try:
        tx = await service.mark_transaction_external(
            transaction_id,
            actor=x_user_id or "system",
            reason=request.reason if request else None
        )
        return tx.to_dict()

    except HTTPException:
        raise
    except ReconciliationError as e:
        raise_reconciliation_error(e)
    except Exception as e:
        logger.error(f"Failed to mark transaction {transaction_id} external: {e}")
        raise HTTPException(status_code=500, detail="Failed to mark transaction external")


@transactions_router.get("/{transaction_id}/audit", summary="Match audit trail")
async def get_transaction_audit(
    transaction_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Every match transition of the transaction, oldest first."""
    validate_required_uuid(transaction_id, "transaction_id")

    try:
        entries = await service.get_transaction_audit_trail(transaction_id)
        return {
            "transaction_id": transaction_id,
            "entries": [entry.to_dict() for entry in entries],
        }

    except HTTPException:
        raise
    except ReconciliationError as e:
        raise_reconciliation_error(e)
    except Exception as e:
        logger.error(f"Failed to get audit trail of transaction {transaction_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to get audit trail")
