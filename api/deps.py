"""
API Dependencies
Common dependencies for FastAPI endpoints
"""

import logging
from functools import lru_cache
from typing import Generator, Optional

import httpx
from fastapi import Depends, HTTPException, status, Header
from sqlalchemy.orm import Session

from database import SessionLocal
from config import settings
from services.access_service import Permission
from services.container import ServiceContainer, build_services


logger = logging.getLogger(__name__)


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency
    Yields a SQLAlchemy session and ensures cleanup
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@lru_cache()
def get_services() -> ServiceContainer:
    """Process-wide service wiring; tests override this dependency."""
    return build_services()


class IdentityVerifier:
    """
    Resolves a bearer credential to a verified subject id.

    With DEBUG on and no verification endpoint configured, the bearer
    token itself is taken as the subject id.
    """

    def __init__(self, config=settings, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.client = client

    async def verify(self, token: str) -> str:
        if not self.config.IDENTITY_VERIFY_URL:
            if self.config.DEBUG:
                return token
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Identity verification is not configured",
            )

        client = self.client or httpx.AsyncClient(timeout=self.config.IDENTITY_TIMEOUT_SECONDS)
        try:
            response = await client.get(
                self.config.IDENTITY_VERIFY_URL,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            logger.error(f"Identity verification request failed: {e}")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Identity verification unavailable",
            )
        finally:
            if self.client is None:
                await client.aclose()

        if response.status_code != 200:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials",
                headers={"WWW-Authenticate": "Bearer"},
            )

        body = response.json()
        subject = body.get("subject_id") or body.get("uid") or body.get("sub")
        if not subject:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Credential did not resolve to a subject",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return str(subject)


identity_verifier = IdentityVerifier()


async def get_current_subject(
    authorization: Optional[str] = Header(None)
) -> str:
    """
    Verified subject id of the caller
    Raises HTTPException if the bearer credential is missing or invalid
    """
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer credential required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    token = authorization.split(" ", 1)[1].strip()
    return await identity_verifier.verify(token)


async def verify_job_token(
    x_job_token: Optional[str] = Header(None, alias="X-Job-Token")
) -> str:
    """Guard for externally triggered jobs"""
    if not settings.JOB_TRIGGER_TOKEN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Job triggers are disabled",
        )
    if x_job_token != settings.JOB_TRIGGER_TOKEN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid job token",
        )
    return x_job_token


async def authorize(
    db: Session,
    services: ServiceContainer,
    subject_id: str,
    patient_id: str,
    permission: Permission = Permission.VIEW,
) -> str:
    """Raises AuthorizationError unless the subject may act on the patient's data"""
    return await services.access.authorize(db, subject_id, patient_id, permission)
