from fastapi import APIRouter, Depends, HTTPException, Request
import os
from sqlalchemy.orm import Session
from ..database import get_db
from .. import models, schemas, audit
from ..auth import get_password_hash, verify_password, create_access_token
from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)
testing = os.getenv("TESTING") == "1"

def rate_limit(limit: str):
    if testing:
        def wrapper(func):
            return func
        return wrapper
    return limiter.limit(limit)

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/register", response_model=schemas.Token)
@rate_limit("5/minute")
async def register(request: Request, user: schemas.UserCreate, db: Session = Depends(get_db)):
    existing = db.query(models.Profile).filter(models.Profile.email == user.email).first()
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")
    profile = models.Profile(
        email=user.email,
        name=user.name or "",
        hashed_password=get_password_hash(user.password),
    )
    db.add(profile)
    db.commit()
    db.refresh(profile)
    audit.log_action(db, profile.id, "register", "profile", profile.id)
    token = create_access_token({"sub": profile.email})
    return schemas.Token(access_token=token)


@router.post("/login", response_model=schemas.Token)
@rate_limit("10/minute")
async def login(request: Request, data: schemas.LoginRequest, db: Session = Depends(get_db)):
    profile = db.query(models.Profile).filter(models.Profile.email == data.email).first()
    if not profile or not profile.is_active or not verify_password(data.password, profile.hashed_password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_access_token({"sub": profile.email})
    audit.log_action(db, profile.id, "login", "profile", profile.id)
    return schemas.Token(access_token=token)
