from fastapi import APIRouter, Depends, HTTPException, Request

from server.dependencies.auth import verify_api_key
from server.models.responses import CompanyIngestResponse
from services.knowledge_engine.CompanyResearchCache import normalize_company_key
from shared.models.knowledge import CompanyProfile, CompanyResearchEntry

router = APIRouter(prefix="/companies", tags=["companies"], dependencies=[Depends(verify_api_key)])


@router.post("", status_code=201)
async def ingest_company(request: Request, body: CompanyProfile) -> CompanyIngestResponse:
    """Cache a researched company profile, replacing the previous one for the same company."""
    entry_id = await request.app.state.ingestion_service.ingest_company_research(body)
    return CompanyIngestResponse(
        id=entry_id,
        normalized_key=normalize_company_key(body.company_name, body.industry, body.location),
    )


@router.get("/lookup")
async def lookup_company(
    request: Request,
    name: str,
    industry: str | None = None,
    location: str | None = None,
) -> CompanyResearchEntry:
    """Return the active cache entry of a company.

    Raises:
        HTTPException: 404 if no unexpired entry exists.
    """
    key = normalize_company_key(name, industry, location)
    entry = await request.app.state.company_cache.lookup(key)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"No active research for '{key}'")
    return entry
