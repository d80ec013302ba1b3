from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from loguru import logger

from ..deps import (
    CancelRequest,
    DecisionRequest,
    DelegateRequest,
    EscalateRequest,
    FlowCreateRequest,
    FlowUpdateRequest,
    ReassignRequest,
    StepRequest,
    SubmitRequest,
    get_current_user,
    get_engine,
)
from ...models.approval import ApprovalFlow, ApprovalFlowStep, DecisionAction, InstanceStatus
from ...services.engine import ApprovalEngine

router = APIRouter(prefix="/approvals", tags=["approvals"])

Engine = Annotated[ApprovalEngine, Depends(get_engine)]
CurrentUser = Annotated[str, Depends(get_current_user)]


def _require_admin(engine: ApprovalEngine, user_id: str) -> None:
    if not engine.is_admin(user_id):
        raise HTTPException(status_code=403, detail="Flow administration requires an administrator role")


def _to_step(req: StepRequest) -> ApprovalFlowStep:
    return ApprovalFlowStep(**req.model_dump())


def _flow_body(engine: ApprovalEngine, flow: ApprovalFlow) -> dict:
    steps = engine.registry.store.get_flow_steps(flow.id)
    return {**flow.model_dump(mode="json"), "steps": [s.model_dump(mode="json") for s in steps]}


def _instances(instances) -> dict:
    return {
        "total": len(instances),
        "instances": [i.model_dump(mode="json") for i in instances],
    }


# --------------------------------------------------------------------- flows

@router.get("/flows")
async def list_flows(engine: Engine, target_type: str | None = None, include_inactive: bool = False):
    flows = engine.registry.list_flows(target_type=target_type, active_only=not include_inactive)
    return {"flows": [f.model_dump(mode="json") for f in flows]}


@router.post("/flows", status_code=status.HTTP_201_CREATED)
async def create_flow(req: FlowCreateRequest, engine: Engine, user: CurrentUser):
    _require_admin(engine, user)
    flow = ApprovalFlow(**req.model_dump(exclude={"steps"}))
    created = engine.registry.create_flow(flow, [_to_step(s) for s in req.steps])
    return _flow_body(engine, created)


@router.get("/flows/{flow_id}")
async def get_flow(flow_id: int, engine: Engine):
    return _flow_body(engine, engine.registry.get_flow(flow_id))


@router.put("/flows/{flow_id}")
async def update_flow(flow_id: int, req: FlowUpdateRequest, engine: Engine, user: CurrentUser):
    """
    Update a flow.

    Structural changes (steps, target type, scope) are refused with 409 once
    any approval references the flow; create a new flow instead.
    """
    _require_admin(engine, user)
    changes = req.model_dump(exclude_unset=True, exclude={"steps"})
    steps = [_to_step(s) for s in req.steps] if req.steps is not None else None
    return _flow_body(engine, engine.registry.update_flow(flow_id, changes, steps))


@router.delete("/flows/{flow_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_flow(flow_id: int, engine: Engine, user: CurrentUser):
    _require_admin(engine, user)
    engine.registry.delete_flow(flow_id)


@router.post("/flows/{flow_id}/activate")
async def activate_flow(flow_id: int, engine: Engine, user: CurrentUser):
    _require_admin(engine, user)
    return _flow_body(engine, engine.registry.activate(flow_id))


@router.post("/flows/{flow_id}/deactivate")
async def deactivate_flow(flow_id: int, engine: Engine, user: CurrentUser):
    _require_admin(engine, user)
    return _flow_body(engine, engine.registry.deactivate(flow_id))


@router.post("/flows/{flow_id}/steps")
async def add_flow_step(flow_id: int, req: StepRequest, engine: Engine, user: CurrentUser):
    """Insert a step at step_order; with 0 it goes before the final step (or last, if final)."""
    _require_admin(engine, user)
    engine.registry.add_step(flow_id, _to_step(req))
    return _flow_body(engine, engine.registry.get_flow(flow_id))


# ----------------------------------------------------------------- instances

@router.post("/instances", status_code=status.HTTP_201_CREATED)
async def submit(req: SubmitRequest, engine: Engine, user: CurrentUser):
    instance = engine.submit(
        req.target_type,
        req.target_id,
        user,
        is_urgent=req.is_urgent,
        flow_code=req.flow_code,
    )
    return engine.get_instance(instance.id).to_dict()


@router.get("/instances/{instance_id}")
async def get_instance(instance_id: str, engine: Engine):
    return engine.get_instance(instance_id).to_dict()


@router.get("/instances/{instance_id}/history")
async def get_history(instance_id: str, engine: Engine):
    decisions = engine.get_history(instance_id)
    return {"decisions": [d.model_dump(mode="json") for d in decisions]}


def _decide(engine: ApprovalEngine, instance_id: str, user: str, action: DecisionAction,
            req: DecisionRequest, delegate_to: list[str] | None = None) -> dict:
    engine.decide(
        instance_id,
        user,
        action,
        req.comment,
        delegate_to=delegate_to,
        expected_step_order=req.expected_step_order,
    )
    return engine.get_instance(instance_id).to_dict()


@router.post("/instances/{instance_id}/approve")
async def approve(instance_id: str, req: DecisionRequest, engine: Engine, user: CurrentUser):
    return _decide(engine, instance_id, user, DecisionAction.APPROVE, req)


@router.post("/instances/{instance_id}/reject")
async def reject(instance_id: str, req: DecisionRequest, engine: Engine, user: CurrentUser):
    return _decide(engine, instance_id, user, DecisionAction.REJECT, req)


@router.post("/instances/{instance_id}/delegate")
async def delegate(instance_id: str, req: DelegateRequest, engine: Engine, user: CurrentUser):
    return _decide(engine, instance_id, user, DecisionAction.DELEGATE, req, delegate_to=req.delegate_to)


@router.post("/instances/{instance_id}/return")
async def return_for_information(instance_id: str, req: DecisionRequest, engine: Engine, user: CurrentUser):
    return _decide(engine, instance_id, user, DecisionAction.RETURN, req)


@router.post("/instances/{instance_id}/cancel")
async def cancel(instance_id: str, req: CancelRequest, engine: Engine, user: CurrentUser):
    engine.cancel(instance_id, user, req.reason)
    return engine.get_instance(instance_id).to_dict()


@router.post("/instances/{instance_id}/escalate")
async def escalate(instance_id: str, req: EscalateRequest, engine: Engine, user: CurrentUser):
    engine.escalate(instance_id, user, req.reason)
    return engine.get_instance(instance_id).to_dict()


@router.post("/instances/{instance_id}/reassign")
async def reassign(instance_id: str, req: ReassignRequest, engine: Engine, user: CurrentUser):
    engine.reassign(instance_id, user, req.approver_ids, req.comment)
    return engine.get_instance(instance_id).to_dict()


# ------------------------------------------------------------------- queries

@router.get("/target/{target_type}/{target_id}")
async def get_by_target(target_type: str, target_id: str, engine: Engine):
    snapshot = engine.get_instance_by_target(target_type, target_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"No approval found for {target_type}/{target_id}")
    return snapshot.to_dict()


@router.get("/pending")
async def list_pending(engine: Engine, user: CurrentUser):
    return _instances(engine.list_pending(user))


@router.get("/pending/role/{role_code}")
async def list_pending_for_role(role_code: str, engine: Engine):
    return _instances(engine.list_pending_for_role(role_code))


@router.get("/my-submissions")
async def my_submissions(engine: Engine, user: CurrentUser, status: InstanceStatus | None = None):
    return _instances(engine.list_submitted(user, status))


@router.get("/overdue")
async def list_overdue(engine: Engine):
    overdue = engine.list_overdue()
    logger.info("Overdue approvals listed", count=len(overdue))
    return _instances(overdue)


@router.get("/stats")
async def stats(engine: Engine, user: CurrentUser, mine: bool = True):
    return engine.get_stats(user if mine else None).model_dump()
