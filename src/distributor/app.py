import logging
from contextlib import asynccontextmanager
from typing import Annotated

import httpx
from fastapi import APIRouter, FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field, PositiveInt
from xrpl.asyncio.clients import AsyncJsonRpcClient

import distributor.constants as C
from distributor.amounts import Asset
from distributor.builder import SequenceAllocator, XrplTransactionBuilder
from distributor.config import EngineSettings, cfg
from distributor.constants import DeliveryMode, JobStatus
from distributor.csv_import import CSV_TEMPLATE, parse_recipients
from distributor.engine import DistributionEngine
from distributor.errors import AmountError, CsvImportError, RepositoryError
from distributor.ledger import XrplLedgerClient
from distributor.logging_config import setup_logging
from distributor.relay import GatewayRelayClient, RippledRelayClient
from distributor.repository import TaskRepository
from distributor.signer import RemoteSigner, WalletSigner
from distributor.sqlite_store import SQLiteRepository
from distributor.stats import status_counts

setup_logging(cfg)
log = logging.getLogger("distributor.app")


def build_engine(conf: dict, client: AsyncJsonRpcClient, repo: TaskRepository, http: httpx.AsyncClient) -> DistributionEngine:
    """Assemble the engine and its collaborators from configuration."""
    eng = conf.get("engine", {})
    to = conf.get("timeout", {})
    ledger = XrplLedgerClient(
        client,
        poll_interval=float(eng.get("poll_interval", C.POLL_INTERVAL)),
        overall_timeout=float(eng.get("confirm_timeout", C.CONFIRM_TIMEOUT)),
        rpc_timeout=float(to.get("rpc", C.RPC_TIMEOUT)),
    )

    signer_cfg = conf.get("signer", {})
    if signer_cfg.get("kind", "wallet") == "remote":
        signer = RemoteSigner(signer_cfg.get("url", ""), signer_cfg.get("public_key", ""), http)
    else:
        if not signer_cfg.get("seed"):
            raise RuntimeError("AUTHORITY_SEED is not set (or set signer.kind = \"remote\")")
        signer = WalletSigner.from_seed(signer_cfg["seed"])

    horizon = int(eng.get("horizon", C.HORIZON))
    relay_cfg = conf.get("relay", {})
    if relay_cfg.get("kind", "rippled") == "gateway":
        relay = GatewayRelayClient(relay_cfg.get("gateway_url", ""), relay_cfg.get("api_key", ""), http, horizon=horizon)
    else:
        relay = RippledRelayClient(
            client,
            ledger,
            horizon=horizon,
            max_fee_drops=int(eng.get("max_fee_drops", C.MAX_FEE_DROPS)),
            submit_timeout=float(to.get("submit", C.SUBMIT_TIMEOUT)),
        )

    sequences = SequenceAllocator(client, rpc_timeout=float(to.get("rpc", C.RPC_TIMEOUT)))
    builder = XrplTransactionBuilder(sequences, signer.public_key)
    return DistributionEngine(repo, builder, relay, ledger, signer, EngineSettings.from_config(conf))


@asynccontextmanager
async def lifespan(app: FastAPI):
    rpc_url = cfg["rippled"]["rpc_url"]
    log.info("Using rippled at %s, store %s", rpc_url, cfg["store"]["db_path"])

    client = AsyncJsonRpcClient(rpc_url)
    http = httpx.AsyncClient(timeout=float(cfg.get("timeout", {}).get("http", 10.0)))
    app.state.repo = SQLiteRepository(cfg["store"]["db_path"])
    app.state.engine = build_engine(cfg, client, app.state.repo, http)
    try:
        yield
    finally:
        log.info("Shutting down...")
        await app.state.engine.shutdown()
        await http.aclose()
    log.info("Shutdown complete")


app = FastAPI(
    title="Token Distributor",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Jobs", "description": "Create, run and inspect distribution jobs"},
    ],
)

r_jobs = APIRouter(prefix="/jobs", tags=["Jobs"])


class CreateJobForm(BaseModel):
    """Form fields sent alongside the recipients CSV upload."""

    name: str = Field(min_length=1)
    asset: str = C.XRP
    asset_decimals: int = Field(default=C.XRP_DECIMALS, ge=0)
    source_account: str
    authority: str
    mode: DeliveryMode = DeliveryMode.COST_SAVER
    batch_size: PositiveInt = cfg.get("engine", {}).get("batch_size", C.DEFAULT_BATCH_SIZE)
    max_retries: PositiveInt = cfg.get("engine", {}).get("max_retries", C.DEFAULT_MAX_RETRIES)


async def _job_or_404(job_id: str):
    job = await app.state.repo.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"job {job_id} not found")
    return job


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/csv-template", response_class=PlainTextResponse)
def csv_template():
    return PlainTextResponse(CSV_TEMPLATE, headers={"Content-Disposition": 'attachment; filename="recipients.csv"'})


@r_jobs.post("", status_code=201)
async def create_job(form: Annotated[CreateJobForm, Form()], file: UploadFile = File(...)):
    """Create a pending job from an uploaded address,amount CSV."""
    try:
        text = (await file.read()).decode("utf-8-sig")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail=f"{file.filename or 'upload'} is not UTF-8 text")
    finally:
        await file.close()

    try:
        asset = Asset.parse(form.asset)
        asset.check_decimals(form.asset_decimals)
        imported = parse_recipients(text, form.asset_decimals)
    except (AmountError, CsvImportError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    repo: TaskRepository = app.state.repo
    job = await repo.create_job(
        name=form.name,
        asset=asset.identifier,
        asset_decimals=form.asset_decimals,
        source_account=form.source_account,
        authority=form.authority,
        mode=form.mode,
        batch_size=form.batch_size,
        max_retries=form.max_retries,
    )
    try:
        await repo.create_tasks(job.id, imported.rows)
    except RepositoryError as e:
        log.error("Could not store recipients of job %s, removing it: %s", job.id, e)
        await repo.delete_job(job.id)
        raise HTTPException(status_code=500, detail="could not store recipients, job not created")
    job = await repo.get_job(job.id)
    log.info("Created job %s (%s) from %s with %s recipients, %s rows rejected",
             job.id, job.name, file.filename, len(imported.rows), len(imported.rejected))
    return {"job": job.to_dict(), "rejected": [r.to_dict() for r in imported.rejected]}


@r_jobs.get("")
async def list_jobs():
    jobs = await app.state.repo.list_jobs()
    return {"jobs": [j.to_dict() for j in jobs]}


@r_jobs.get("/{job_id}")
async def get_job(job_id: str):
    job = await _job_or_404(job_id)
    counts = status_counts(await app.state.repo.aggregate_by_status(job_id))
    return {"job": job.to_dict(), "counts": counts}


@r_jobs.get("/{job_id}/tasks")
async def list_tasks(job_id: str, limit: int = Query(100, ge=1, le=1000), offset: int = Query(0, ge=0)):
    await _job_or_404(job_id)
    tasks = await app.state.repo.list_tasks(job_id, limit=limit, offset=offset)
    return {"tasks": [t.to_dict() for t in tasks], "limit": limit, "offset": offset}


@r_jobs.post("/{job_id}/execute", status_code=202)
async def execute_job(job_id: str):
    job = await _job_or_404(job_id)
    if job.status != JobStatus.PENDING or app.state.engine.is_running(job_id):
        raise HTTPException(status_code=409, detail=f"job is {job.status}, only pending jobs can be executed")
    await app.state.engine.start_execution(job_id)
    return {"status": "started", "job_id": job_id}


@r_jobs.post("/{job_id}/cancel")
async def cancel_job(job_id: str):
    job = await _job_or_404(job_id)
    if job.status not in (JobStatus.PENDING, JobStatus.RUNNING):
        raise HTTPException(status_code=409, detail=f"job is {job.status}, nothing to cancel")
    await app.state.engine.cancel_execution(job_id)
    return {"status": "cancelling", "job_id": job_id}


@r_jobs.delete("/{job_id}")
async def delete_job(job_id: str):
    job = await _job_or_404(job_id)
    if job.status == JobStatus.RUNNING or app.state.engine.is_running(job_id):
        raise HTTPException(status_code=409, detail="job is running, cancel it first")
    await app.state.repo.delete_job(job_id)
    return {"deleted": job_id}


app.include_router(r_jobs)
