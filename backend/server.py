"""Contact Sync API - Main Server"""
from fastapi import FastAPI, APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import os
import logging
from pathlib import Path
from pydantic import BaseModel, Field, AliasChoices
from typing import Optional, Dict, Any, Union
from datetime import datetime, timezone

from database import Database
from contact_store import ContactStore, parse_offset_cursor
from integration_client import IntegrationClient, FLOW_STATE_READY
from app_events import AppEventNotifier
from import_pipeline import ImportPipeline
from webhook_reconciler import WebhookReconciler
from auth_service import verify_token, CustomerToken
from errors import ContactSyncError, ValidationError, NotFoundError, UnauthorizedError

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

api_router = APIRouter(prefix="/api")

DEFAULT_ACTION_KEY = "get-contacts"

# Actions imported for every new connection
RECORD_ACTION_KEYS = [
    key.strip()
    for key in os.environ.get('RECORD_ACTION_KEYS', DEFAULT_ACTION_KEY).split(',')
    if key.strip()
]

# lookup type → (platform action, input parameter)
LOOKUP_ACTIONS = {
    "phone": ("find-contact-by-phone", "phoneNumber"),
    "email": ("find-contact-by-email", "email"),
}

NO_CONNECTION = {"success": False, "error": "No connection found"}


# ============ Pydantic Models ============

class RecordPatchRequest(BaseModel):
    customerId: Optional[Union[str, int]] = None
    name: Optional[str] = None
    fields: Optional[Dict[str, Any]] = None


class ImportAllRequest(BaseModel):
    """Either {customerId, connectionId} or the platform's connection.created event."""
    customerId: Optional[str] = None
    connectionId: Optional[str] = None
    eventType: Optional[str] = None
    data: Optional[Dict[str, Any]] = None

    def resolve(self) -> tuple[Optional[str], Optional[str], Optional[str]]:
        connection = (self.data or {}).get("connection") or {}
        customer_id = self.customerId or connection.get("userId")
        connection_id = self.connectionId or connection.get("id")
        integration_key = (connection.get("integration") or {}).get("key")
        return customer_id, connection_id, integration_key


class WebhookRequest(BaseModel):
    customerId: Optional[Union[str, int]] = Field(
        None, validation_alias=AliasChoices("customerId", "userId")
    )
    externalId: Optional[Union[str, int]] = Field(
        None, validation_alias=AliasChoices("externalId", "externalContactId")
    )
    deleted: Optional[bool] = Field(
        False, validation_alias=AliasChoices("deleted", "externalContactDeleted")
    )
    data: Optional[Dict[str, Any]] = None


class RecordPushRequest(BaseModel):
    customerId: Optional[Union[str, int]] = None
    data: Optional[Dict[str, Any]] = None


class FlowUpdateRequest(BaseModel):
    enabled: bool


# ============ Dependencies ============

def get_store(request: Request) -> ContactStore:
    return ContactStore(request.app.state.database)


def get_gateway(request: Request) -> IntegrationClient:
    return request.app.state.gateway


def get_notifier(request: Request) -> AppEventNotifier:
    return request.app.state.notifier


def get_reconciler(request: Request) -> WebhookReconciler:
    return WebhookReconciler(get_store(request), request.app.state.notifier)


async def get_current_customer(authorization: Optional[str] = Header(None)) -> CustomerToken:
    """Verify the bearer token and return the authenticated customer"""
    if not authorization:
        raise UnauthorizedError("Authorization header required")

    try:
        scheme, token = authorization.split()
    except ValueError:
        raise UnauthorizedError("Invalid authorization header")
    if scheme.lower() != "bearer":
        raise UnauthorizedError("Invalid authentication scheme")

    token_data = verify_token(token)
    if not token_data:
        raise UnauthorizedError("Invalid or expired token")

    return token_data


# ============ Records Endpoints ============

@api_router.get("/records")
async def list_records(
    customerId: Optional[str] = None,
    search: Optional[str] = None,
    filter_text: Optional[str] = Query(None, alias="filter"),
    cursor: Optional[str] = None,
    current_customer: CustomerToken = Depends(get_current_customer),
    store: ContactStore = Depends(get_store),
):
    """One page of the customer's contacts, optionally filtered by free text"""
    if customerId and customerId != current_customer.customer_id:
        raise UnauthorizedError("customerId does not match the authenticated customer")

    offset = parse_offset_cursor(cursor)
    page = await store.list(current_customer.customer_id, search=search or filter_text, cursor=offset)
    return page.to_response()


@api_router.patch("/records/{external_id}")
async def patch_record(
    external_id: str,
    request: RecordPatchRequest,
    store: ContactStore = Depends(get_store),
    notifier: AppEventNotifier = Depends(get_notifier),
):
    """Edit a contact's name or individual fields. customerId selects the record, it is never written."""
    if request.customerId is None or str(request.customerId) == "":
        raise ValidationError("customerId is required")
    customer_id = str(request.customerId)

    patch = request.model_dump(exclude_unset=True, exclude={"customerId"})
    record = await store.update(external_id, customer_id, patch)
    if record is None:
        logger.info(f"Contact not found for patch: {external_id} (customer={customer_id})")
        raise NotFoundError("Contact not found")
    logger.info(f"Contact patched: {external_id} (customer={customer_id}, keys={sorted(patch)})")

    await notifier.notify_updated(record, customer_id)
    return record


# ============ Import Endpoints ============

@api_router.get("/import")
async def import_records(
    actionKey: str = DEFAULT_ACTION_KEY,
    current_customer: CustomerToken = Depends(get_current_customer),
    store: ContactStore = Depends(get_store),
    gateway: IntegrationClient = Depends(get_gateway),
):
    """Import every page of one action from the customer's first connection"""
    customer_id = current_customer.customer_id
    connection = await gateway.get_first_connection(customer_id)
    if not connection:
        return NO_CONNECTION

    pipeline = ImportPipeline(store, gateway, customer_id, connection["id"])
    count = await pipeline.import_action(actionKey)
    return {"success": True, "count": count}


@api_router.post("/import-all")
async def import_all_records(
    request: ImportAllRequest,
    store: ContactStore = Depends(get_store),
    gateway: IntegrationClient = Depends(get_gateway),
):
    """Import all record actions for a connection (called on the platform's connection.created event)"""
    customer_id, connection_id, integration_key = request.resolve()
    if not customer_id or not connection_id:
        raise ValidationError("customerId and connectionId are required")

    logger.info(f"Importing {RECORD_ACTION_KEYS} for connection {connection_id} (customer={customer_id})")
    pipeline = ImportPipeline(store, gateway, customer_id, connection_id)
    results = await pipeline.import_all(RECORD_ACTION_KEYS)

    response = {"success": True, "connectionId": connection_id, "results": results}
    if integration_key:
        response["integrationKey"] = integration_key
    return response


# ============ Webhook Endpoints ============

@api_router.post("/webhook")
async def contact_webhook(
    request: WebhookRequest,
    reconciler: WebhookReconciler = Depends(get_reconciler),
):
    """Apply a contact created/updated/deleted event pushed by the platform"""
    return await reconciler.reconcile(
        request.customerId,
        request.externalId,
        deleted=bool(request.deleted),
        data=request.data,
    )


@api_router.post("/webhooks")
async def record_push_webhook(
    request: RecordPushRequest,
    reconciler: WebhookReconciler = Depends(get_reconciler),
):
    """Apply a pushed record keyed by data.id (never a delete)"""
    data = request.data or {}
    return await reconciler.reconcile(request.customerId, data.get("id"), deleted=False, data=data)


# ============ Lookup & Integration Endpoints ============

@api_router.get("/lookup")
async def lookup_contact(
    by: str = "phone",
    value: str = "",
    current_customer: CustomerToken = Depends(get_current_customer),
    gateway: IntegrationClient = Depends(get_gateway),
):
    """Find a contact in the connected CRM by phone number or email"""
    if by not in LOOKUP_ACTIONS:
        raise ValidationError(f"Unsupported lookup type: {by}")
    if not value:
        raise ValidationError("value is required")

    customer_id = current_customer.customer_id
    connection = await gateway.get_first_connection(customer_id)
    if not connection:
        return NO_CONNECTION

    action_key, parameter = LOOKUP_ACTIONS[by]
    output = await gateway.run_action_raw(customer_id, connection["id"], action_key, {parameter: value})
    return {"success": True, "contact": output.get("fields") or None}


@api_router.get("/connections")
async def list_connections(
    current_customer: CustomerToken = Depends(get_current_customer),
    gateway: IntegrationClient = Depends(get_gateway),
):
    connections = await gateway.list_connections(current_customer.customer_id)
    return {"connections": connections}


def _flow_state(instance: Dict[str, Any]) -> Dict[str, Any]:
    state = (instance.get("flow") or {}).get("state")
    ready = state == FLOW_STATE_READY
    return {"enabled": bool(instance.get("enabled")) and ready, "state": state, "ready": ready}


@api_router.get("/integrations/{connection_id}/flows/{flow_key}")
async def get_flow(
    connection_id: str,
    flow_key: str,
    current_customer: CustomerToken = Depends(get_current_customer),
    gateway: IntegrationClient = Depends(get_gateway),
):
    instance = await gateway.get_flow_instance(current_customer.customer_id, connection_id, flow_key)
    return _flow_state(instance)


@api_router.patch("/integrations/{connection_id}/flows/{flow_key}")
async def update_flow(
    connection_id: str,
    flow_key: str,
    request: FlowUpdateRequest,
    current_customer: CustomerToken = Depends(get_current_customer),
    gateway: IntegrationClient = Depends(get_gateway),
):
    """Enable or disable a flow. Only READY flows can be enabled."""
    customer_id = current_customer.customer_id
    instance = await gateway.get_flow_instance(customer_id, connection_id, flow_key)
    current_state = _flow_state(instance)
    if request.enabled and not current_state["ready"]:
        raise ValidationError(f"Flow {flow_key} is not ready (state={current_state['state']})")

    updated = await gateway.set_flow_enabled(customer_id, connection_id, flow_key, request.enabled)
    logger.info(f"Flow {flow_key} on {connection_id} set enabled={request.enabled} (customer={customer_id})")
    return _flow_state({**instance, **updated})


# ============ Health Check ============

@api_router.get("/")
async def root():
    return {"message": "ContactSync API - CRM contact sync"}


@api_router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


# ============ Error Handlers ============

async def contact_sync_error_handler(request: Request, exc: ContactSyncError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        message = ContactSyncError.public_message
    else:
        message = exc.message
    return JSONResponse(status_code=exc.status_code, content={"error": message})


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"error": ContactSyncError.public_message})


# ============ App Factory ============

def create_app(
    database: Database = None,
    gateway: IntegrationClient = None,
    notifier: AppEventNotifier = None,
) -> FastAPI:
    """Build the app. Collaborators default to the environment-configured ones."""
    app = FastAPI(title="ContactSync - CRM Contact Sync")
    app.state.database = database or Database()
    app.state.gateway = gateway or IntegrationClient()
    app.state.notifier = notifier or AppEventNotifier()

    app.include_router(api_router)

    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ContactSyncError, contact_sync_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # Connect once on startup; every request shares this handle
    @app.on_event("startup")
    async def startup():
        await app.state.database.connect()

    @app.on_event("shutdown")
    async def shutdown():
        await app.state.database.close()

    return app


app = create_app()
