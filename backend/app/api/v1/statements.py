from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from sqlalchemy.orm import Session

from app.core.auth import CurrentUser, get_current_user
from app.core.config import get_settings
from app.core.dependencies import get_db
from app.schemas.finance import StatementImportResponse
from app.services.finance_store import FinanceStore, SqlFinanceStore
from app.services.statement_import.service import import_statement, render_import_report


router = APIRouter()


def get_finance_store(db: Session = Depends(get_db)) -> FinanceStore:
    return SqlFinanceStore(db)


@router.post("/statements/import", response_model=StatementImportResponse)
async def import_bank_statement(
    file: UploadFile = File(...),
    current_user: CurrentUser = Depends(get_current_user),
    store: FinanceStore = Depends(get_finance_store),
):
    settings = get_settings()
    content = await file.read()
    if not content:
        raise HTTPException(400, "Empty file")
    if len(content) > settings.statement_max_bytes:
        raise HTTPException(413, "File too large")

    summary = import_statement(current_user.id, content, file.filename or "", store)
    return StatementImportResponse(summary=summary, report=render_import_report(summary))
