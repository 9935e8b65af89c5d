"""
Payment settings API

Secrets never leave this router in clear text: reads return masked values plus
_<field>_set flags, and a save accepts the masked placeholder back as "unchanged".
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Header
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from handlers.payment_api import error_response
from services.credential_vault import SENSITIVE_FIELDS
from services.payment_errors import PaymentError
from services.payment_test_service import PaymentTestService, webhook_url_for
from services.payment_transaction_service import payment_transaction_service
from services.providers.provider_factory import PROVIDER_CLASSES
from utils.provider_config_validator import ConfigLevel, provider_config_validator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments/config")


class PaymentConfigUpdate(BaseModel):
    enabled: Optional[bool] = None
    test_mode: Optional[bool] = None
    settings: Optional[Dict[str, Any]] = None
    providers: Optional[List[str]] = None
    provider_settings: Optional[Dict[str, Dict[str, Any]]] = None


@router.get("/providers")
async def list_providers():
    """Provider tags with the fields their settings form needs"""
    providers = []
    for provider in PROVIDER_CLASSES:
        fields = [
            {"name": rule.name, "type": rule.type.value, "required": rule.level == ConfigLevel.REQUIRED,
             "description": rule.description, "secret": rule.name in SENSITIVE_FIELDS.get(provider, ())}
            for rule in provider_config_validator.get_rules(provider)
        ]
        providers.append({"type": provider, "fields": fields})
    return {"success": True, "providers": providers}


@router.get("/{entity_type}/{entity_id}")
async def get_payment_config(entity_type: str, entity_id: str,
                             x_user_id: Optional[str] = Header(None, alias="X-User-Id")):
    config_service = payment_transaction_service.config_service
    try:
        config = await config_service.get_config_for_display(entity_type, entity_id, x_user_id)
    except PaymentError as e:
        return error_response(e, "get_config")
    config["webhook_urls"] = {p: webhook_url_for(entity_type, entity_id, p) for p in PROVIDER_CLASSES}
    return {"success": True, "config": config}


@router.put("/{entity_type}/{entity_id}")
async def save_payment_config(entity_type: str, entity_id: str, body: PaymentConfigUpdate,
                              x_user_id: Optional[str] = Header(None, alias="X-User-Id")):
    config_service = payment_transaction_service.config_service
    try:
        config = await config_service.save_config(
            entity_type, entity_id, body.model_dump(exclude_none=True), user_id=x_user_id
        )
    except PaymentError as e:
        return error_response(e, "save_config")
    return {"success": True, "config": config}


@router.delete("/{entity_type}/{entity_id}")
async def delete_payment_config(entity_type: str, entity_id: str,
                                x_user_id: Optional[str] = Header(None, alias="X-User-Id")):
    config_service = payment_transaction_service.config_service
    try:
        deleted = await config_service.delete_config(entity_type, entity_id, user_id=x_user_id)
    except PaymentError as e:
        return error_response(e, "delete_config")
    if not deleted:
        return JSONResponse({"success": False, "deleted": False}, status_code=404)
    return {"success": True, "deleted": True}


@router.post("/{entity_type}/{entity_id}/test/{provider}")
async def test_provider(entity_type: str, entity_id: str, provider: str,
                        x_user_id: Optional[str] = Header(None, alias="X-User-Id")):
    tester = PaymentTestService(payment_transaction_service.config_service)
    try:
        result = await tester.run_provider_test(entity_type, entity_id, provider, user_id=x_user_id)
    except PaymentError as e:
        return error_response(e, "provider_test")
    return {"success": result.success, "result": result.to_dict()}
