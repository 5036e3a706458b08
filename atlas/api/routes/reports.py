from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from atlas.api.deps import get_report_store
from atlas.models.schemas import DeleteResponse, ReportResponse, ReportsResponse
from atlas.services.report_store import ReportNotFoundError, ReportStore, ReportStoreError

router = APIRouter(prefix="/api/reports", tags=["reports"])


@router.get("", response_model=ReportsResponse)
async def list_reports(
    limit: int = Query(default=10, ge=1, le=100),
    reports: ReportStore = Depends(get_report_store),
):
    return ReportsResponse(reports=await reports.list(limit), total=await reports.count())


@router.get("/{filename}", response_model=ReportResponse)
async def get_report(filename: str, reports: ReportStore = Depends(get_report_store)):
    if not filename.endswith(".md"):
        filename = f"{filename}.md"
    try:
        stored = await reports.get(filename)
    except ReportNotFoundError:
        raise HTTPException(status_code=404, detail="Report not found")
    except ReportStoreError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ReportResponse(filename=filename, content=stored.content, metadata=stored.metadata)


@router.delete("/{filename}", response_model=DeleteResponse)
async def delete_report(filename: str, reports: ReportStore = Depends(get_report_store)):
    if not filename.endswith(".md"):
        filename = f"{filename}.md"
    try:
        await reports.delete(filename)
    except ReportNotFoundError:
        raise HTTPException(status_code=404, detail="Report not found")
    except ReportStoreError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return DeleteResponse(message="Report deleted successfully")
