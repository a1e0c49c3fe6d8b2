import sqlite3
import time

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import issue_access_token, require_user
from database.db import create_tables, verify_user_credentials

router = APIRouter()


class UserLogin(BaseModel):
    email: str
    password: str


@router.post("/auth/login")
def login(payload: UserLogin):
    email = payload.email.strip()
    password = payload.password.strip()

    if not email:
        raise HTTPException(status_code=400, detail="Email is required.")
    if not password:
        raise HTTPException(status_code=400, detail="Password is required.")

    try:
        user = verify_user_credentials(email, password)
    except sqlite3.OperationalError:
        # Self-heal when DB schema is missing (e.g., startup/lifespan skipped).
        try:
            create_tables()
            user = verify_user_credentials(email, password)
        except sqlite3.OperationalError:
            raise HTTPException(
                status_code=503,
                detail="Authentication service unavailable. Please retry.",
            )

    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    token, claims = issue_access_token(user["user_id"], role=user["role"])
    now = int(time.time())
    return {
        "access_token": token,
        "token_type": "bearer",
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
        "user": {
            "user_id": user["user_id"],
            "email": user["email"],
            "role": user["role"],
            "first_name": user["first_name"],
            "last_name": user["last_name"],
        },
    }


@router.get("/auth/me")
def auth_me(user: dict = Depends(require_user)):
    return {
        "user_id": user.get("sub"),
        "role": user.get("role"),
        "expires_at": user.get("exp"),
        "issued_at": user.get("iat"),
    }
