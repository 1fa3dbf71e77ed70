"""
QueryGuard v1.0 - Guarded SQL Execution Service
===============================================

HTTP surface over the query-safety core used by the analysis agent:
- Validation (read-only, single statement, no system catalogs)
- Result cache with TTL, keyed per dataset table
- Bounded execution (row cap, timeout, pooled connections)
- Clause-level diffs between successive queries on a table
- Stratified sampling and column profiles for large datasets

Every query failure is returned as a structured result (success: false);
HTTP errors are reserved for malformed requests and service state.

Version: 1.0
"""

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
import logging
from contextlib import asynccontextmanager

from config import GuardSettings
from env_guard import validate_environment
from guard_errors import (
    QueryExecutionError,
    QueryGuardError,
    QueryTimeoutError,
)
from query_history import QueryHistoryStore
from query_pipeline import GuardedQueryPipeline, QueryRequest
from sql_executor import SQLExecutor

settings = GuardSettings.from_env()

logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)
logger.setLevel(settings.log_level)  # App loggers at LOG_LEVEL, libraries at WARNING
for _component in ("sql_validator", "query_cache", "sql_executor", "sql_diff",
                   "data_sampler", "query_pipeline", "query_history"):
    logging.getLogger(_component).setLevel(settings.log_level)

VERSION = "1.0"

# Global instances (assigned at startup, or injected by tests)
sql_executor: Optional[SQLExecutor] = None
history: Optional[QueryHistoryStore] = None
pipeline: Optional[GuardedQueryPipeline] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize the guarded executor on startup, dispose the pool on shutdown"""
    global sql_executor, history, pipeline

    if sql_executor is None:
        logger.info(f"Initializing QueryGuard v{VERSION}...")
        validate_environment(strict=False)

        sql_executor = SQLExecutor.from_settings(settings)
        logger.info(
            f"✓ SQL executor ready (max_rows={settings.max_rows}, "
            f"timeout={settings.timeout_seconds:g}s, cache_ttl={settings.cache_ttl_seconds}s)"
        )

    if history is None:
        history = QueryHistoryStore()
    if pipeline is None:
        pipeline = GuardedQueryPipeline(sql_executor, history)
        logger.info("✓ Guarded query pipeline ready")

    yield

    logger.info("Shutting down QueryGuard...")
    sql_executor.executor.engine.dispose()


app = FastAPI(
    title="QueryGuard API",
    description="Validated, cached and bounded SQL execution for dataset analysis agents",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# REQUEST MODELS
# =============================================================================

class QueryRequestModel(BaseModel):
    query: str = Field(..., min_length=1)
    table_identity: str = Field(..., min_length=1)
    table_name: Optional[str] = None
    explanation: Optional[str] = None


class TestSQLRequest(BaseModel):
    csv_id: str = Field(..., min_length=1)
    query: str = Field(..., min_length=1)


def _require_initialized():
    if sql_executor is None or pipeline is None or history is None:
        raise HTTPException(status_code=503, detail="Query executor not initialized")


def _history_key(table_identity: str) -> str:
    try:
        return sql_executor.resolve_table(table_identity)
    except QueryGuardError as e:
        raise HTTPException(status_code=400, detail=e.message)


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/health")
def health_check():
    """Health check endpoint"""
    if sql_executor is None:
        return {"status": "unhealthy", "error": "Query executor not initialized"}

    return {
        "status": "healthy",
        "version": VERSION,
        "dialect": sql_executor.executor.engine.dialect.name,
        "cache_entries": len(sql_executor.cache),
        "sampling_enabled": sql_executor.settings.sampling_enabled,
    }


@app.post("/api/query")
def run_query(request: QueryRequestModel) -> Dict[str, Any]:
    """Run one agent query through the guarded pipeline"""
    _require_initialized()
    result = pipeline.handle(QueryRequest(
        query=request.query,
        table_identity=request.table_identity,
        table_name=request.table_name,
        explanation=request.explanation,
    ))
    return result.to_dict()


@app.post("/api/test-sql")
def test_sql(request: TestSQLRequest) -> Dict[str, Any]:
    """Cached execution without history or diffing (debugging aid)"""
    _require_initialized()
    table_name = _history_key(request.csv_id)
    logger.info(f"[TEST-SQL] csv_id={request.csv_id} table={table_name}")

    result = sql_executor.execute_with_cache(request.query, request.csv_id)
    return {
        "success": result.success,
        "result": result.to_dict(),
        "debug": {
            "csvId": request.csv_id,
            "tableName": table_name,
            "query": request.query,
        },
    }


@app.get("/api/datasets/{table_identity}/profile")
def get_dataset_profile(table_identity: str, limit: Optional[int] = None):
    """Column statistics and representative rows for a dataset table"""
    _require_initialized()
    if limit is not None and limit <= 0:
        raise HTTPException(status_code=400, detail="limit must be a positive integer")

    try:
        sample = sql_executor.profile_table(table_identity, limit)
    except QueryTimeoutError as e:
        raise HTTPException(status_code=504, detail=e.message)
    except QueryExecutionError as e:
        raise HTTPException(status_code=502, detail=e.message)
    except QueryGuardError as e:
        raise HTTPException(status_code=400, detail=e.message)

    return {"success": True, "profile": sample.to_dict()}


@app.get("/api/sessions/{table_identity}/history")
def get_query_history(table_identity: str):
    _require_initialized()
    table_name = _history_key(table_identity)
    queries = history.get_history(table_name)
    return {"tableName": table_name, "queries": queries, "count": len(queries)}


@app.delete("/api/sessions/{table_identity}/history")
def clear_query_history(table_identity: str):
    """Called by the session manager when an analysis session ends"""
    _require_initialized()
    table_name = _history_key(table_identity)
    removed = history.clear(table_name)
    return {"message": f"Cleared {removed} queries", "tableName": table_name, "removed": removed}


@app.get("/api/sessions/{table_identity}/last-result")
def get_last_result(table_identity: str):
    """Most recent successful result on a table (chart generation input)"""
    _require_initialized()
    table_name = _history_key(table_identity)
    last = history.get_last_result(table_name)
    if last is None:
        raise HTTPException(status_code=404, detail="No successful query for this dataset")
    return {"query": last.query, "data": last.data, "rowCount": last.row_count}


@app.get("/api/cache/stats")
def get_cache_stats():
    _require_initialized()
    return {
        "cache": sql_executor.cache.get_stats(),
        "executor": sql_executor.executor.get_stats(),
    }


@app.delete("/api/cache")
def clear_cache(table_identity: Optional[str] = None):
    _require_initialized()
    if table_identity is not None:
        _history_key(table_identity)
    removed = sql_executor.clear_cache(table_identity)
    return {"message": f"Cleared {removed} cache entries", "removed": removed}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
