"""
FastAPI application for the compliance engine REST API.

Provides endpoints for:
- Compiling and parsing label filters
- Searching the latest result of each matching stream
- Compliance over time by filter or by stream
- Finding status histograms over time
- CRUD operations for saved filters

Store failures are reported as 500. Malformed filter documents and, in
strict mode, unsupported operators are reported as 422. In the default
permissive mode an unsupported operator matches everything, so such a
request succeeds with an unfiltered result.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from .backends import SqliteRecordStore
from .compiler import compile_filter, compile_sql
from .config import Settings, load_settings
from .errors import FilterError, StoreError
from .models import Filter
from .parser import parse_filter
from .serializer import decode_filter, encode_filter
from .service import ComplianceService
from .storage import FilterStorage


# Pydantic models for API requests/responses


class FilterRequest(BaseModel):
    """Request carrying a label filter document."""
    filter: Optional[Dict[str, Any]] = Field(None, description="Label filter document")


class ParseRequest(BaseModel):
    """Request to parse a text filter expression."""
    expression: str = Field(..., description="Filter expression, e.g. 'env=prod AND tier=web'")


class StreamRequest(BaseModel):
    """Request naming a single stream."""
    model_config = ConfigDict(populate_by_name=True)

    stream_id: str = Field(..., alias="streamId")


class SqlQueryModel(BaseModel):
    clause: str
    params: List[Any]


class CompileResponse(BaseModel):
    """Native queries compiled from a filter."""
    filter: Dict[str, Any]
    query: Dict[str, Any]
    sql: SqlQueryModel


class RecordModel(BaseModel):
    id: Optional[str] = None
    streamId: str
    timestamp: str
    status: str
    title: str
    labels: Dict[str, str]


class SearchResponse(BaseModel):
    data: List[RecordModel]


class StreamEntryModel(BaseModel):
    interval: str
    title: str
    statusCounts: Dict[str, int]
    hasRecords: bool


class StreamRecords(BaseModel):
    """Compliance history of one stream."""
    model_config = ConfigDict(populate_by_name=True)

    stream_id: str = Field(..., alias="_id")
    records: List[StreamEntryModel]


class StreamRecordsResponse(BaseModel):
    data: List[StreamRecords]


class StatusCountModel(BaseModel):
    status: str
    count: int


class StatusOverTimeModel(BaseModel):
    interval: str
    statuses: List[StatusCountModel]


class StatusOverTimeResponse(BaseModel):
    data: List[StatusOverTimeModel]


class SavedFilterCreate(BaseModel):
    """Request to create a saved filter."""
    name: str = Field(..., description="Filter name")
    filter: Dict[str, Any] = Field(..., description="Label filter document")
    controls: List[str] = Field(default_factory=list, description="Related control IDs")


class SavedFilterUpdate(BaseModel):
    """Request to update a saved filter."""
    name: Optional[str] = None
    filter: Optional[Dict[str, Any]] = None
    controls: Optional[List[str]] = None


class SavedFilter(BaseModel):
    """A saved label filter."""
    id: str
    name: str
    filter: Dict[str, Any]
    controls: List[str]
    created_at: str
    updated_at: str


class SavedFiltersExport(BaseModel):
    filters: List[SavedFilter]
    export_timestamp: str
    total_count: int


def create_app(
    service: Optional[ComplianceService] = None,
    filter_storage: Optional[FilterStorage] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        service: Optional ComplianceService (for testing)
        filter_storage: Optional FilterStorage instance (for testing)
        settings: Optional settings, loaded from COMPLIANCE_ENGINE_CONFIG when omitted

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="Compliance Engine API",
        description="Label filter compilation and compliance-over-time reporting",
        version="1.0.0"
    )

    if service is None:
        settings = settings or load_settings()
        store = SqliteRecordStore(settings.database_path, strict=settings.strict_filters)
        service = ComplianceService(store, settings)
    settings = service.settings
    storage = filter_storage or FilterStorage(settings.filters_path)

    def decode(document: Optional[Dict[str, Any]]) -> Filter:
        try:
            return decode_filter(document)
        except FilterError as e:
            raise HTTPException(status_code=422, detail=f"Invalid label filter: {e}")

    def run(operation, *args):
        try:
            return operation(*args)
        except FilterError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except StoreError as e:
            raise HTTPException(status_code=500, detail=f"Record store failure: {e}")

    def stream_records(reports) -> StreamRecordsResponse:
        return StreamRecordsResponse(
            data=[StreamRecords.model_validate(report.to_dict()) for report in reports]
        )

    def status_groups(groups) -> StatusOverTimeResponse:
        return StatusOverTimeResponse(
            data=[StatusOverTimeModel.model_validate(group.to_dict()) for group in groups]
        )

    # Filters

    @app.post("/api/filters/compile", response_model=CompileResponse)
    async def compile_endpoint(request: FilterRequest) -> CompileResponse:
        """Compile a filter into document-store and SQL queries."""
        label_filter = decode(request.filter)
        strict = settings.strict_filters
        query = run(compile_filter, label_filter, strict)
        sql = run(compile_sql, label_filter, strict)
        return CompileResponse(
            filter=encode_filter(label_filter),
            query=query,
            sql=SqlQueryModel(clause=sql.clause, params=sql.params),
        )

    @app.post("/api/filters/parse")
    async def parse_endpoint(request: ParseRequest) -> Dict[str, Any]:
        """Parse a text filter expression into a filter document."""
        try:
            label_filter = parse_filter(request.expression)
        except SyntaxError as e:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid filter expression: {str(e)}"
            )
        return encode_filter(label_filter)

    # Results and findings

    @app.post("/api/results/search", response_model=SearchResponse)
    async def search(request: FilterRequest) -> SearchResponse:
        """Latest result of every stream matching the filter."""
        records = run(service.search, decode(request.filter))
        return SearchResponse(data=[RecordModel(**record.to_dict()) for record in records])

    @app.post("/api/results/compliance-by-search", response_model=StreamRecordsResponse)
    async def compliance_by_search(request: FilterRequest) -> StreamRecordsResponse:
        """Compliance over time for every stream matching the filter."""
        return stream_records(run(service.compliance_by_filter, decode(request.filter)))

    @app.post("/api/results/compliance-by-stream", response_model=StreamRecordsResponse)
    async def compliance_by_stream(request: StreamRequest) -> StreamRecordsResponse:
        """Compliance over time for a single stream."""
        return stream_records(run(service.compliance_by_stream, request.stream_id))

    @app.post("/api/findings/status-over-time", response_model=StatusOverTimeResponse)
    async def status_over_time(request: FilterRequest) -> StatusOverTimeResponse:
        """Finding status counts per interval for findings matching the filter."""
        return status_groups(run(service.status_over_time_by_filter, decode(request.filter)))

    @app.post("/api/findings/status-over-time-by-stream", response_model=StatusOverTimeResponse)
    async def status_over_time_by_stream(request: StreamRequest) -> StatusOverTimeResponse:
        """Finding status counts per interval for a single finding stream."""
        return status_groups(run(service.status_over_time_by_stream, request.stream_id))

    # Saved filters

    @app.get("/api/filters", response_model=List[SavedFilter])
    async def list_filters() -> List[SavedFilter]:
        """Get all saved filters."""
        return [SavedFilter(**saved) for saved in storage.get_all()]

    @app.post("/api/filters", response_model=SavedFilter)
    async def create_filter(request: SavedFilterCreate) -> SavedFilter:
        """Create a new saved filter."""
        saved = {
            "id": str(uuid.uuid4()),
            "name": request.name,
            "filter": request.filter,
            "controls": request.controls,
        }
        try:
            created = storage.create(saved)
        except FilterError as e:
            raise HTTPException(status_code=422, detail=f"Invalid label filter: {e}")
        return SavedFilter(**created)

    @app.get("/api/filters/export/download", response_model=SavedFiltersExport)
    async def export_filters() -> SavedFiltersExport:
        """Export all saved filters."""
        filters = [SavedFilter(**saved) for saved in storage.get_all()]
        return SavedFiltersExport(
            filters=filters,
            export_timestamp=datetime.now(timezone.utc).isoformat(),
            total_count=len(filters)
        )

    @app.get("/api/filters/{filter_id}", response_model=SavedFilter)
    async def get_filter(filter_id: str) -> SavedFilter:
        """Get a saved filter by ID."""
        saved = storage.get_by_id(filter_id)
        if saved is None:
            raise HTTPException(
                status_code=404,
                detail=f"Filter '{filter_id}' not found"
            )
        return SavedFilter(**saved)

    @app.put("/api/filters/{filter_id}", response_model=SavedFilter)
    async def update_filter(filter_id: str, request: SavedFilterUpdate) -> SavedFilter:
        """Update a saved filter."""
        updates = request.model_dump(exclude_none=True)
        try:
            updated = storage.update(filter_id, updates)
        except FilterError as e:
            raise HTTPException(status_code=422, detail=f"Invalid label filter: {e}")
        if updated is None:
            raise HTTPException(
                status_code=404,
                detail=f"Filter '{filter_id}' not found"
            )
        return SavedFilter(**updated)

    @app.delete("/api/filters/{filter_id}")
    async def delete_filter(filter_id: str) -> Dict[str, str]:
        """Delete a saved filter."""
        if not storage.delete(filter_id):
            raise HTTPException(
                status_code=404,
                detail=f"Filter '{filter_id}' not found"
            )
        return {"message": f"Filter '{filter_id}' deleted successfully"}

    @app.get("/api/filters/{filter_id}/compliance", response_model=StreamRecordsResponse)
    async def saved_filter_compliance(filter_id: str) -> StreamRecordsResponse:
        """Compliance over time for the streams matching a saved filter."""
        label_filter = storage.get_filter(filter_id)
        if label_filter is None:
            raise HTTPException(
                status_code=404,
                detail=f"Filter '{filter_id}' not found"
            )
        return stream_records(run(service.compliance_by_filter, label_filter))

    @app.get("/health")
    async def health_check() -> Dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


_app: Optional[FastAPI] = None


def __getattr__(name: str) -> Any:
    """Create the app instance on first access of `app`.

    Importing this module does not open the database or the saved filters
    file; `uvicorn compliance_engine.api:app` builds the app when it starts.
    """
    global _app
    if name == "app":
        if _app is None:
            _app = create_app()
        return _app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
