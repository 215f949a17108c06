from fastapi import APIRouter, Depends, HTTPException

from app.context import AppContext
from app.models import User
from app.routers.deps import get_admin_user, get_ctx
from app.schemas.admin import ProcessRead

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/processes", response_model=list[ProcessRead])
async def list_processes(ctx: AppContext = Depends(get_ctx), _: User = Depends(get_admin_user)):
    """Child processes currently tracked by the process manager."""
    return [
        ProcessRead(pid=p.pid, description=p.description, command=p.command, start=p.start, os_pid=p.os_pid)
        for p in ctx.process_manager.processes()
    ]


@router.delete("/processes/{pid}", status_code=204)
async def kill_process(pid: int, ctx: AppContext = Depends(get_ctx), _: User = Depends(get_admin_user)):
    if not ctx.process_manager.kill(pid):
        raise HTTPException(status_code=404, detail="Process not found")
