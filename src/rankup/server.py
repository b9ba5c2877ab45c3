"""Rank-up service.

Main FastAPI application integrating:
- Wallet authentication (signed nonce -> bearer token)
- Task and payment intake with cooldown and price snapshot
- Payment confirmation webhook driving the rank-up pipeline
- Task, payment and history listings
"""

from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from .config import config, validate_config_for_service
from .database import Database, db
from .engine.auth import AuthService
from .engine.collection import CollectionVerifier
from .engine.keystore import Keystore
from .engine.ledger_client import LedgerClient
from .engine.metadata_store import MetadataStore
from .engine.orchestrator import Orchestrator
from .engine.progression import ProgressionEngine
from .engine.publication import PublicationPipeline
from .engine.ranks import RankTable
from .engine.storage_client import StorageClient
from .engine.tasks import CooldownPolicy, TaskService
from .engine.webhooks import WebhookHandler
from .errors import RankupError, status_for_code
from .logging_utils import LogContext, get_logger, setup_logging
from .models import AuthRequest, History, NonceResponse, Payment, PaymentCreate, PaymentReceive, Task, TaskCreate

# Validate configuration
validate_config_for_service("api")

# Setup logging
setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Rank-Up",
    description="Paid, probabilistic rank progression for collection tokens",
)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

# Wire the pipeline
rank_table = RankTable()
ledger = LedgerClient()
metadata_store = MetadataStore()
storage = StorageClient()
verifier = CollectionVerifier(ledger)
publisher = PublicationPipeline(metadata_store, storage, ledger, Keystore(), db)
cooldown = CooldownPolicy(db)
orchestrator = Orchestrator(verifier, metadata_store, ProgressionEngine(rank_table), publisher, db, cooldown=cooldown)
task_service = TaskService(db, verifier, metadata_store, rank_table, cooldown=cooldown)
auth_service = AuthService(db)
webhook_handler = WebhookHandler(ledger, orchestrator, db)


def get_database() -> Database:
    return db


def get_task_service() -> TaskService:
    return task_service


def get_auth_service() -> AuthService:
    return auth_service


def get_webhook_handler() -> WebhookHandler:
    return webhook_handler


async def get_current_account(
    authorization: Optional[str] = Header(None),
    auth: AuthService = Depends(get_auth_service),
) -> str:
    """Resolve the wallet behind the Authorization header.

    Accepts both ``Bearer <token>`` and a bare token.
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    token = authorization[7:] if authorization.lower().startswith("bearer ") else authorization
    try:
        return auth.decode_token(token.strip())
    except RankupError as e:
        raise HTTPException(status_code=401, detail=e.message)


def _require_owner(account: str, current_account: str) -> None:
    if account != current_account:
        raise HTTPException(status_code=403, detail="Token was issued to a different account")


@app.on_event("startup")
async def startup():
    """Initialize database on startup."""
    logger.info("Initializing rank-up service...")
    await db.initialize()
    logger.info("Rank-up service initialized")


@app.on_event("shutdown")
async def shutdown():
    await ledger.close()
    await metadata_store.close()
    await storage.close()


@app.get("/health")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"status": "ok", "service": "rankup"}


# Auth
@app.post("/auth/{pubkey}", response_model=NonceResponse)
async def request_nonce(pubkey: str, auth: AuthService = Depends(get_auth_service)):
    """Issue a fresh nonce for ``pubkey`` to sign."""
    try:
        nonce = await auth.request_nonce(pubkey)
    except RankupError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return NonceResponse(nonce=nonce)


@app.post("/auth")
async def authenticate(request: AuthRequest, auth: AuthService = Depends(get_auth_service)) -> dict:
    """Exchange a signed nonce for a bearer token."""
    try:
        token = await auth.authenticate(request.pubkey, request.signature)
    except RankupError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return {"token": token, "token_type": "bearer"}


# Tasks
@app.post("/tasks", response_model=Task)
async def create_task(
    request: TaskCreate,
    current_account: str = Depends(get_current_account),
    tasks: TaskService = Depends(get_task_service),
):
    """Quote and record a rank-up attempt for a token."""
    _require_owner(request.account, current_account)
    try:
        return await tasks.create_task(request.account, request.mint_address)
    except RankupError as e:
        logger.warning(f"Task creation for {request.mint_address} rejected: {e.code}")
        raise HTTPException(status_code=e.status_code, detail=e.message)


@app.get("/tasks/id/{task_id}", response_model=Task)
async def get_task(
    task_id: int,
    current_account: str = Depends(get_current_account),
    database: Database = Depends(get_database),
):
    task = await database.get_task(task_id)
    if task is None or task.account != current_account:
        raise HTTPException(status_code=404, detail="Task does not exist")
    return task


@app.get("/tasks/account/{account}", response_model=list[Task])
async def list_tasks(
    account: str,
    page: int = 0,
    current_account: str = Depends(get_current_account),
    database: Database = Depends(get_database),
):
    _require_owner(account, current_account)
    return await database.list_tasks(account, page)


# Payments
@app.post("/payments", response_model=Payment)
async def create_payment(
    request: PaymentCreate,
    current_account: str = Depends(get_current_account),
    tasks: TaskService = Depends(get_task_service),
):
    """Create a payment for a task. The amount is always the task price."""
    _require_owner(request.account, current_account)
    try:
        return await tasks.create_payment(request.account, request.task_id)
    except RankupError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@app.get("/payments/id/{payment_id}", response_model=Payment)
async def get_payment(
    payment_id: int,
    current_account: str = Depends(get_current_account),
    database: Database = Depends(get_database),
):
    payment = await database.get_payment(payment_id)
    if payment is None or payment.account != current_account:
        raise HTTPException(status_code=404, detail="Payment does not exist")
    return payment


@app.get("/payments/account/{account}", response_model=list[Payment])
async def list_payments(
    account: str,
    page: int = 0,
    current_account: str = Depends(get_current_account),
    database: Database = Depends(get_database),
):
    _require_owner(account, current_account)
    return await database.list_payments(account, page)


# History
@app.get("/history/account/{account}", response_model=list[History])
async def list_history(
    account: str,
    page: int = 0,
    current_account: str = Depends(get_current_account),
    database: Database = Depends(get_database),
):
    _require_owner(account, current_account)
    return await database.list_history(account, page)


@app.get("/history/mint/{mint_address}", response_model=list[History])
async def list_mint_history(
    mint_address: str,
    page: int = 0,
    current_account: str = Depends(get_current_account),
    database: Database = Depends(get_database),
):
    return await database.list_history_for_mint(mint_address, page)


@app.post("/payments/hook")
async def receive_payment_webhook(
    request: Request,
    x_webhook_signature: str = Header(None, alias="X-Webhook-Signature"),
    x_correlation_id: str = Header(None, alias="X-Correlation-Id"),
    handler: WebhookHandler = Depends(get_webhook_handler),
):
    """Receive a payment confirmation and run the rank-up.

    Implements idempotency, anti-replay, and authentication.

    Args:
        request: FastAPI request object.
        x_webhook_signature: HMAC signature for authenticity.
        x_correlation_id: Optional correlation ID.

    Returns:
        Webhook processing result.
    """
    with LogContext(correlation_id=x_correlation_id):
        logger.info("Received payment confirmation webhook")

        if not x_webhook_signature:
            logger.error("Missing X-Webhook-Signature header")
            raise HTTPException(status_code=401, detail="Missing X-Webhook-Signature header")

        # Read raw payload for signature verification
        raw_payload = await request.body()

        try:
            receive = PaymentReceive.model_validate_json(raw_payload)
        except ValidationError as e:
            logger.error(f"Invalid webhook payload: {e}")
            raise HTTPException(status_code=400, detail="Invalid webhook payload")

        result = await handler.process_payment(
            receive=receive,
            signature=x_webhook_signature,
            raw_payload=raw_payload,
        )

        if result["status"] == "error":
            code = result.get("code")
            logger.error(f"Webhook processing error: {code}: {result.get('error')}")
            status_code = 401 if code == "invalid_signature" else status_for_code(code)
            raise HTTPException(status_code=status_code, detail=result.get("error"))
        return result


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting rank-up service on {config.host}:{config.port}")
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )
