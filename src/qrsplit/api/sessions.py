"""REST endpoints for sessions, participants, items and payments."""

from __future__ import annotations

from typing import Any, Optional, Union

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from qrsplit.services.coordinator import MutationCoordinator
from qrsplit.services.errors import InvalidInput
from qrsplit.services.payloads import split_dict
from qrsplit.services.split import SplitMethod

router = APIRouter(prefix="/api/sessions", tags=["sessions"])

Amount = Union[float, str, None]


def get_coordinator(request: Request) -> MutationCoordinator:
    return request.app.state.coordinator


def parse_split_method(value: Optional[str]) -> SplitMethod:
    if not value:
        return SplitMethod.PROPORTIONAL
    try:
        return SplitMethod(value.lower())
    except ValueError as exc:
        raise InvalidInput(f"Unsupported split method: {value}", received=value) from exc


class CreateSessionRequest(BaseModel):
    merchant_id: Optional[str] = None
    merchant_wallet: Optional[str] = None
    created_by: Optional[str] = None


class JoinSessionRequest(BaseModel):
    user_id: Optional[str] = None
    name: Optional[str] = None
    wallet_address: Optional[str] = None
    added_by: Optional[str] = None
    is_operator: bool = False


class WalletRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    wallet_address: Optional[str] = Field(None, alias="walletAddress")
    user_id: Optional[str] = Field(None, alias="userId")
    name: Optional[str] = None


class AddItemRequest(BaseModel):
    name: str
    amount: Amount = None
    tax: Amount = None
    tip: Amount = None
    assignees: Optional[list[str]] = None


class AssigneesRequest(BaseModel):
    assignees: list[str] = Field(default_factory=list)


class PaymentRequest(BaseModel):
    user_id: Optional[str] = None
    wallet_address: Optional[str] = None
    amount: Amount = None
    token_address: Optional[str] = None


class CalculateSplitsRequest(BaseModel):
    method: Optional[str] = None


@router.post("")
async def create_session(
    body: CreateSessionRequest,
    coordinator: MutationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    result = await coordinator.create_session(body.merchant_id, body.merchant_wallet, body.created_by)
    payload = result.as_payload()
    return {
        "success": True,
        "session_id": result.snapshot.session_id,
        "session": payload["session"],
        "qr_code": result.data["qrCode"],
        "web_link": result.data["webLink"],
    }


@router.get("/{session_id}")
async def get_session(session_id: str, coordinator: MutationCoordinator = Depends(get_coordinator)) -> dict[str, Any]:
    return await coordinator.get_session(session_id)


@router.get("/{session_id}/connected-users")
async def connected_users(
    session_id: str,
    coordinator: MutationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return coordinator.connected_users(session_id)


@router.get("/{session_id}/payment-status")
async def payment_status(
    session_id: str,
    coordinator: MutationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    return await coordinator.payment_status(session_id)


@router.put("/{session_id}/merchant-wallet")
async def set_merchant_wallet(
    session_id: str,
    body: WalletRequest,
    coordinator: MutationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    result = await coordinator.set_merchant_wallet(session_id, body.wallet_address, body.user_id)
    return {"success": True, **result.as_payload()}


@router.post("/{session_id}/finalize")
async def finalize_session(
    session_id: str,
    coordinator: MutationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    result = await coordinator.finalize_session(session_id)
    return {"success": True, "message": "Session finalized", **result.as_payload()}


@router.post("/{session_id}/join")
async def join_session(
    session_id: str,
    body: JoinSessionRequest,
    coordinator: MutationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    result = await coordinator.join_session(
        session_id,
        user_id=body.user_id,
        name=body.name,
        wallet_address=body.wallet_address,
        added_by=body.added_by,
        is_operator=body.is_operator,
    )
    return {"success": True, "participant": result.data["participant"], **result.as_payload()}


@router.put("/{session_id}/participants/{user_id}/wallet")
async def update_participant_wallet(
    session_id: str,
    user_id: str,
    body: WalletRequest,
    coordinator: MutationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    result = await coordinator.update_participant_wallet(session_id, user_id, body.wallet_address, body.name)
    return {"success": True, "participant": result.data["participant"], **result.as_payload()}


@router.post("/{session_id}/items")
async def add_item(
    session_id: str,
    body: AddItemRequest,
    coordinator: MutationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    result = await coordinator.add_item(session_id, body.name, body.amount, body.tax, body.tip, body.assignees)
    return {"success": True, "item": result.data["item"], **result.as_payload()}


@router.put("/{session_id}/items/{item_id}/assignees")
async def update_item_assignees(
    session_id: str,
    item_id: str,
    body: AssigneesRequest,
    coordinator: MutationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    result = await coordinator.update_item_assignees(session_id, item_id, body.assignees)
    return {"success": True, "item": result.data["item"], **result.as_payload()}


@router.get("/{session_id}/splits")
async def get_splits(
    session_id: str,
    method: Optional[str] = None,
    coordinator: MutationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    splits = await coordinator.get_splits(session_id, parse_split_method(method))
    return {"success": True, "splits": split_dict(splits)}


@router.post("/{session_id}/calculate-splits")
async def calculate_splits(
    session_id: str,
    body: Optional[CalculateSplitsRequest] = None,
    coordinator: MutationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    result = await coordinator.calculate_splits(session_id, parse_split_method(body.method if body else None))
    return {"success": True, **result.as_payload()}


@router.post("/{session_id}/pay")
async def pay(
    session_id: str,
    body: PaymentRequest,
    coordinator: MutationCoordinator = Depends(get_coordinator),
) -> dict[str, Any]:
    result = await coordinator.register_payment(
        session_id,
        body.amount,
        user_id=body.user_id,
        wallet_address=body.wallet_address,
        token_address=body.token_address,
    )
    return {
        "success": True,
        "txHash": result.data["txHash"],
        "payment": result.data["payment"],
        "participantId": result.data["participant"]["id"],
        "merchantWallet": result.data["merchantWallet"],
        **result.as_payload(),
    }
