from fastapi import APIRouter, Depends, Request
from typing import List, Optional

from relaxgo.core.security import AuthorizationContext, get_authorization_context
from relaxgo.models.db_models import ApplicationProfile, ApplicationStatus, MasseurApplication
from relaxgo.services.approval_service import ApprovalService

router = APIRouter()


def get_approval_service(request: Request) -> ApprovalService:
    return request.app.state.approval_service


@router.get("/providers", response_model=List[MasseurApplication])
async def discover_providers(approval_service: ApprovalService = Depends(get_approval_service)):
    return await approval_service.discover_providers()


@router.post("/applications", response_model=MasseurApplication, status_code=201)
async def submit_application(profile: ApplicationProfile,
                             ctx: AuthorizationContext = Depends(get_authorization_context),
                             approval_service: ApprovalService = Depends(get_approval_service)):
    return await approval_service.submit_application(ctx.identity_id, profile)


@router.get("/applications/me", response_model=Optional[MasseurApplication])
async def my_application(ctx: AuthorizationContext = Depends(get_authorization_context),
                         approval_service: ApprovalService = Depends(get_approval_service)):
    return await approval_service.get_application(ctx.identity_id)


@router.get("/admin/applications", response_model=List[MasseurApplication])
async def list_applications(status: Optional[ApplicationStatus] = None,
                            search: Optional[str] = None,
                            ctx: AuthorizationContext = Depends(get_authorization_context),
                            approval_service: ApprovalService = Depends(get_approval_service)):
    return await approval_service.list_applications(ctx, status=status, search=search)


@router.post("/admin/applications/{masseur_id}/approve", response_model=MasseurApplication)
async def approve_application(masseur_id: str,
                              ctx: AuthorizationContext = Depends(get_authorization_context),
                              approval_service: ApprovalService = Depends(get_approval_service)):
    return await approval_service.approve(ctx, masseur_id)


@router.post("/admin/applications/{masseur_id}/reject", response_model=MasseurApplication)
async def reject_application(masseur_id: str,
                             ctx: AuthorizationContext = Depends(get_authorization_context),
                             approval_service: ApprovalService = Depends(get_approval_service)):
    return await approval_service.reject(ctx, masseur_id)
