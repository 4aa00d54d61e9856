"""
WhatsApp Flow Screen Machine

Declarative screen graphs for the three hard-coded flows and the handlers
that validate each screen's data_exchange payload:

    Onboarding:     PERSONAL_DETAILS -> BVN -> PIN_SETUP -> COMPLETION
    Data purchase:  NETWORK_SELECT -> PHONE -> PLAN_SELECT -> CONFIRM -> PIN_VERIFY
    Transfer PIN:   PIN_VERIFY

Terminal screens (PIN_VERIFY) never do the money movement inline: the payload
is parked under a processing key (TTL 300s), an empty response closes the
form, and the completion worker finishes the work out-of-band.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import Config
from services import data_plan_service, onboarding_service
from services.data_purchase_service import validate_recipient_phone
from services.flow_token_service import delete_flow_session, merge_flow_session, verify_flow_token
from services.session_store import data_purchase_processing_key, get_session_store, transfer_processing_key
from services.wallet_service import generate_reference
from utils.background_task_runner import run_background_task
from utils.exception_handler import ChatWalletError, ValidationError
from utils.pin_security import validate_pin_format

logger = logging.getLogger(__name__)

PING_RESPONSE = {"data": {"status": "active"}}


class FlowScreen(Enum):
    PERSONAL_DETAILS = "PERSONAL_DETAILS"
    BVN = "BVN"
    PIN_SETUP = "PIN_SETUP"
    COMPLETION = "COMPLETION"
    NETWORK_SELECT = "NETWORK_SELECT"
    PHONE = "PHONE"
    PLAN_SELECT = "PLAN_SELECT"
    CONFIRM = "CONFIRM"
    PIN_VERIFY = "PIN_VERIFY"


class FlowType(Enum):
    ONBOARDING = "onboarding"
    DATA_PURCHASE = "data_purchase"
    TRANSFER_PIN = "transfer_pin"


@dataclass
class FlowDefinition:
    """Ordered screens of one flow; the last entries in `terminal` close the form"""
    flow_type: FlowType
    screens: List[FlowScreen]
    initial: FlowScreen
    terminal: List[FlowScreen] = field(default_factory=list)


FLOW_DEFINITIONS: Dict[FlowType, FlowDefinition] = {
    FlowType.ONBOARDING: FlowDefinition(
        FlowType.ONBOARDING,
        [FlowScreen.PERSONAL_DETAILS, FlowScreen.BVN, FlowScreen.PIN_SETUP, FlowScreen.COMPLETION],
        initial=FlowScreen.PERSONAL_DETAILS,
        terminal=[FlowScreen.COMPLETION],
    ),
    FlowType.DATA_PURCHASE: FlowDefinition(
        FlowType.DATA_PURCHASE,
        [FlowScreen.NETWORK_SELECT, FlowScreen.PHONE, FlowScreen.PLAN_SELECT, FlowScreen.CONFIRM,
         FlowScreen.PIN_VERIFY],
        initial=FlowScreen.NETWORK_SELECT,
        terminal=[FlowScreen.PIN_VERIFY],
    ),
    FlowType.TRANSFER_PIN: FlowDefinition(
        FlowType.TRANSFER_PIN,
        [FlowScreen.PIN_VERIFY],
        initial=FlowScreen.PIN_VERIFY,
        terminal=[FlowScreen.PIN_VERIFY],
    ),
}


def flow_type_for(session_data: Dict[str, Any], flow_id: Optional[str]) -> FlowType:
    """Session data names the flow explicitly; otherwise map the configured flow id"""
    explicit = session_data.get("flowType")
    if explicit:
        return FlowType(explicit)
    by_id = {
        Config.WHATSAPP_ONBOARDING_FLOW_ID: FlowType.ONBOARDING,
        Config.WHATSAPP_DATA_PURCHASE_FLOW_ID: FlowType.DATA_PURCHASE,
        Config.WHATSAPP_TRANSFER_PIN_FLOW_ID: FlowType.TRANSFER_PIN,
    }
    if flow_id and flow_id in by_id:
        return by_id[flow_id]
    if session_data.get("transfer"):
        return FlowType.TRANSFER_PIN
    if session_data.get("network") or session_data.get("planId"):
        return FlowType.DATA_PURCHASE
    return FlowType.ONBOARDING


def screen_response(screen: FlowScreen, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"screen": screen.value, "data": data or {}}


def error_response(screen: FlowScreen, message: str, field_name: Optional[str] = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {"error_message": message}
    if field_name:
        data["validation"] = {field_name: message}
    return screen_response(screen, data)


@dataclass
class FlowContext:
    user_id: str
    flow_token: str
    flow_type: FlowType
    session_data: Dict[str, Any]


# ===== ONBOARDING SCREENS =====

async def _personal_details(ctx: FlowContext, data: Dict[str, Any]) -> Dict[str, Any]:
    await onboarding_service.save_personal_details(ctx.user_id, data)
    await merge_flow_session(ctx.flow_token, {"firstName": data.get("firstName"), "lastName": data.get("lastName")})
    return screen_response(FlowScreen.BVN)


async def _bvn(ctx: FlowContext, data: Dict[str, Any]) -> Dict[str, Any]:
    bvn = onboarding_service.validate_bvn(data.get("bvn"))
    await onboarding_service.record_bvn(ctx.user_id, bvn)
    # the full BVN lives only in the short-TTL session until PIN_SETUP hands it to provisioning
    await merge_flow_session(ctx.flow_token, {"bvn": bvn})
    return screen_response(FlowScreen.PIN_SETUP)


async def _pin_setup(ctx: FlowContext, data: Dict[str, Any]) -> Dict[str, Any]:
    bvn = data.get("bvn") or ctx.session_data.get("bvn")
    result = await onboarding_service.complete_onboarding(
        ctx.user_id, data.get("pin"), data.get("confirmPin"), bvn=bvn
    )
    if bvn:
        await run_background_task(onboarding_service.start_virtual_account_provisioning(ctx.user_id, bvn))
    await delete_flow_session(ctx.flow_token)
    logger.info(f"🎉 ONBOARDING_FLOW_COMPLETED: user={ctx.user_id} kyc={result['kycStatus']}")
    return screen_response(FlowScreen.COMPLETION, {
        "kycStatus": result["kycStatus"],
        "message": f"🎉 Your {Config.PLATFORM_NAME} wallet is ready. We'll send your account number shortly.",
    })


# ===== DATA PURCHASE SCREENS =====

async def _network_select(ctx: FlowContext, data: Dict[str, Any]) -> Dict[str, Any]:
    network = data_plan_service.normalize_network(data.get("network"))
    await merge_flow_session(ctx.flow_token, {"network": network})
    return screen_response(FlowScreen.PHONE, {"network": network})


async def _phone(ctx: FlowContext, data: Dict[str, Any]) -> Dict[str, Any]:
    phone = validate_recipient_phone(data.get("phone"))
    network = ctx.session_data.get("network") or data.get("network")
    plans = await data_plan_service.list_plans(network)
    await merge_flow_session(ctx.flow_token, {"phone": phone})
    return screen_response(FlowScreen.PLAN_SELECT, {
        "network": network,
        "phone": phone,
        "plans": [
            {"id": str(plan["id"]), "title": f"{plan['title']} ({plan['validity']}) - ₦{plan['sellingPrice']:,.0f}"}
            for plan in plans
        ],
    })


async def _plan_select(ctx: FlowContext, data: Dict[str, Any]) -> Dict[str, Any]:
    network = ctx.session_data.get("network") or data.get("network")
    plan = await data_plan_service.price_plan(network, data.get("planId"))
    reference = ctx.session_data.get("reference") or generate_reference("DATA")
    await merge_flow_session(ctx.flow_token, {"planId": plan["id"], "reference": reference})
    return screen_response(FlowScreen.CONFIRM, {
        "network": network,
        "phone": ctx.session_data.get("phone"),
        "planId": str(plan["id"]),
        "planTitle": f"{plan['title']} ({plan['validity']})",
        "price": f"₦{plan['sellingPrice']:,.2f}",
    })


async def _confirm(ctx: FlowContext, data: Dict[str, Any]) -> Dict[str, Any]:
    return screen_response(FlowScreen.PIN_VERIFY, {
        "network": ctx.session_data.get("network"),
        "phone": ctx.session_data.get("phone"),
        "planId": str(ctx.session_data.get("planId")),
    })


# ===== TERMINAL SCREEN =====

async def _pin_verify(ctx: FlowContext, data: Dict[str, Any]) -> Dict[str, Any]:
    pin = validate_pin_format(data.get("pin"))

    if ctx.flow_type == FlowType.DATA_PURCHASE:
        session = ctx.session_data
        job = {
            "network": data.get("network") or session.get("network"),
            "phone": data.get("phone") or session.get("phone"),
            "planId": data.get("planId") or session.get("planId"),
            "reference": session.get("reference"),
        }
        if not (job["network"] and job["phone"] and job["planId"]):
            raise ValidationError("Your data purchase session is incomplete. Please start again.", field="planId")
        key = data_purchase_processing_key(ctx.user_id)
        kind = "data_purchase"
    else:
        transfer = data.get("transfer") or ctx.session_data.get("transfer")
        if not transfer:
            raise ValidationError("Your transfer session has expired. Please start again.", field="transfer")
        job = {"transfer": transfer}
        key = transfer_processing_key(ctx.user_id)
        kind = "transfer"

    await schedule_completion(key, {
        "kind": kind,
        "userId": ctx.user_id,
        "flowToken": ctx.flow_token,
        "pin": pin,
        "job": job,
        "createdAt": time.time(),
    })
    return {}


async def schedule_completion(key: str, record: Dict[str, Any]) -> None:
    """Park the terminal payload and dispatch the completion worker"""
    from jobs.completion_worker import process_processing_key

    await get_session_store().set(key, record, ttl=Config.PROCESSING_KEY_TTL)
    logger.info(f"📤 COMPLETION_SCHEDULED: user={record['userId']} kind={record['kind']} key={key}")
    await run_background_task(process_processing_key(key))


SCREEN_HANDLERS: Dict[FlowScreen, Callable[[FlowContext, Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
    FlowScreen.PERSONAL_DETAILS: _personal_details,
    FlowScreen.BVN: _bvn,
    FlowScreen.PIN_SETUP: _pin_setup,
    FlowScreen.NETWORK_SELECT: _network_select,
    FlowScreen.PHONE: _phone,
    FlowScreen.PLAN_SELECT: _plan_select,
    FlowScreen.CONFIRM: _confirm,
    FlowScreen.PIN_VERIFY: _pin_verify,
}


async def _initial_screen(ctx: FlowContext) -> Dict[str, Any]:
    definition = FLOW_DEFINITIONS[ctx.flow_type]
    if ctx.flow_type == FlowType.TRANSFER_PIN:
        transfer = ctx.session_data.get("transfer") or {}
        return screen_response(FlowScreen.PIN_VERIFY, {
            "amount": transfer.get("amount"),
            "accountName": transfer.get("accountName"),
            "bankName": transfer.get("bankName"),
        })
    return screen_response(definition.initial)


async def handle_flow_request(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Route one decrypted flow request.

    Returns the response payload to encrypt; `{}` for a terminal screen.
    """
    action = (payload.get("action") or "").lower()
    if action == "ping":
        return PING_RESPONSE

    data = payload.get("data") or {}
    if data.get("error"):
        # client-side error notification
        logger.warning(f"⚠️ FLOW_CLIENT_ERROR: screen={payload.get('screen')} error={data.get('error')}")
        return {"data": {"acknowledged": True}}

    screen_name = payload.get("screen")
    verified = await verify_flow_token(payload.get("flow_token"))
    if not verified["valid"]:
        logger.warning(f"🚫 FLOW_TOKEN_REJECTED: reason={verified.get('reason')} screen={screen_name}")
        screen = FlowScreen(screen_name) if screen_name in FlowScreen.__members__ else FlowScreen.PERSONAL_DETAILS
        return error_response(screen, "Invalid session. Please restart from the chat.")

    ctx = FlowContext(
        user_id=verified["userId"],
        flow_token=payload["flow_token"],
        flow_type=flow_type_for(verified["sessionData"] or {}, verified.get("flowId")),
        session_data=verified["sessionData"] or {},
    )

    if action == "init":
        return await _initial_screen(ctx)

    if screen_name not in FlowScreen.__members__:
        logger.warning(f"⚠️ FLOW_UNKNOWN_SCREEN: user={ctx.user_id} screen={screen_name}")
        return error_response(FLOW_DEFINITIONS[ctx.flow_type].initial, "Unknown screen. Please restart.")
    screen = FlowScreen(screen_name)

    if action == "back":
        return screen_response(screen, ctx.session_data)

    if screen == FlowScreen.COMPLETION:
        await delete_flow_session(ctx.flow_token)
        return {}

    handler = SCREEN_HANDLERS[screen]
    try:
        return await handler(ctx, data)
    except ValidationError as e:
        logger.info(f"📝 FLOW_VALIDATION: user={ctx.user_id} screen={screen.value} field={e.field}")
        return error_response(screen, e.user_message, e.field)
    except ChatWalletError as e:
        logger.error(
            f"❌ FLOW_SCREEN_FAILED: user={ctx.user_id} screen={screen.value} category={e.code} cause={e.message}"
        )
        return error_response(screen, e.user_message)
