"""API endpoints for worktrees on disk."""

from fastapi import APIRouter, Depends, Query

from devsandbox.api.deps import get_inventory
from devsandbox.sandbox.inventory import WorktreeInfo, WorktreeInventory

router = APIRouter(prefix="/api/worktrees", tags=["worktrees"])


@router.get("")
def list_worktrees(inventory: WorktreeInventory = Depends(get_inventory)) -> list[WorktreeInfo]:
    return inventory.list_all()


@router.get("/available")
def available_worktrees(
    project_id: str,
    inventory: WorktreeInventory = Depends(get_inventory),
) -> list[WorktreeInfo]:
    return inventory.list_available(project_id)


@router.delete("")
def delete_worktree(
    path: str = Query(..., description="Absolute worktree path under the worktree base"),
    inventory: WorktreeInventory = Depends(get_inventory),
) -> dict[str, bool]:
    inventory.delete(path)
    return {"success": True}
