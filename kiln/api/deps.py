"""
Shared route dependencies.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from kiln.core import Kiln
from kiln.remote import RemoteWorker


def get_kiln(request: Request) -> Kiln:
    """The façade created at application startup."""
    kiln = getattr(request.app.state, "kiln", None)
    if kiln is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Task queue not initialized",
        )
    return kiln


def get_remote_worker(request: Request) -> RemoteWorker:
    """The remote executor, when this process is configured as one."""
    worker = getattr(request.app.state, "remote_worker", None)
    if worker is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Remote execution is not configured (set REMOTE_RESPONSE_URL)",
        )
    return worker


KilnDep = Annotated[Kiln, Depends(get_kiln)]
RemoteWorkerDep = Annotated[RemoteWorker, Depends(get_remote_worker)]
