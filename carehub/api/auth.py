import logging
import os
from datetime import datetime, timedelta, timezone, date
from decimal import Decimal
from typing import Optional

import bcrypt
import jwt
from dotenv import load_dotenv
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from carehub.database.connection import get_db
from carehub.database.models import (
    User, UserRole, Patient, Doctor, DiagnosticCenter, MedicalShop
)
from carehub.utils.audit import log_action

load_dotenv()
router = APIRouter(prefix="/api/auth", tags=["Authentication"])
security = HTTPBearer(auto_error=False)
logger = logging.getLogger(__name__)

# ==================== CONFIG ====================

SECRET_KEY = os.getenv("JWT_SECRET", "change-this-secret-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24 * 7)))  # 7 days
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

INVALID_CREDENTIALS = "Invalid email or password"
BCRYPT_MAX_BYTES = 72  # bcrypt limit, counted in UTF-8 bytes


def check_password_bytes(value: str) -> str:
    if len(value.encode("utf-8")) > BCRYPT_MAX_BYTES:
        raise ValueError(f"Password must be at most {BCRYPT_MAX_BYTES} bytes")
    return value

# ==================== PYDANTIC MODELS ====================

class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=72)
    name: str = Field(..., min_length=1, max_length=100)
    phone: str = Field(..., pattern=r"^[0-9]{10}$", description="10 digit phone number")
    role: UserRole

    # Patient
    date_of_birth: Optional[date] = None
    gender: Optional[str] = Field(None, description="male/female/other")
    address: Optional[str] = None

    # Doctor
    specialization: Optional[str] = None
    qualification: Optional[str] = None
    experience: Optional[int] = Field(None, ge=0)
    consultation_fee: Optional[Decimal] = Field(None, gt=0)

    # Doctor / Diagnostics / Shop
    license_number: Optional[str] = None

    # Diagnostics / Shop
    center_name: Optional[str] = None
    shop_name: Optional[str] = None
    delivery_charges: Optional[Decimal] = Field(None, ge=0)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, v: str) -> str:
        return check_password_bytes(v)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8, max_length=72)

    @field_validator("new_password")
    @classmethod
    def new_password_fits_bcrypt(cls, v: str) -> str:
        return check_password_bytes(v)

# ==================== HELPER FUNCTIONS ====================

def hash_password(password: str) -> str:
    try:
        return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid password: {str(e)}")


def verify_password(plain_password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(plain_password.encode(), password_hash.encode())
    except ValueError:
        return False


def create_access_token(data: dict) -> str:
    """Create JWT access token"""
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    to_encode.update({
        "exp": now + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES),
        "iat": now,
        "type": "access"
    })
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and validate JWT token"""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired"
        )
    except jwt.InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token"
        )


def issue_token(user: User) -> str:
    return create_access_token(data={
        "user_id": user.id,
        "email": user.email,
        "role": user.role
    })


def profile_name(profile) -> Optional[str]:
    if profile is None:
        return None
    return getattr(profile, "name", None) or getattr(profile, "center_name", None) or getattr(profile, "shop_name", None)


def build_profile(user_id: int, request: RegisterRequest):
    """Role profile row for a new user; raises 400 on missing role fields"""
    def require(*fields):
        missing = [f for f in fields if getattr(request, f) in (None, "")]
        if missing:
            raise HTTPException(
                status_code=400,
                detail=f"Missing required fields for {request.role.value}: {', '.join(missing)}"
            )

    if request.role == UserRole.PATIENT:
        return Patient(
            user_id=user_id,
            name=request.name,
            phone=request.phone,
            date_of_birth=request.date_of_birth,
            gender=request.gender,
            address=request.address
        )

    if request.role == UserRole.DOCTOR:
        require("specialization", "qualification", "license_number", "consultation_fee")
        return Doctor(
            user_id=user_id,
            name=request.name,
            phone=request.phone,
            specialization=request.specialization,
            qualification=request.qualification,
            experience=request.experience or 0,
            license_number=request.license_number,
            consultation_fee=request.consultation_fee
        )

    if request.role == UserRole.DIAGNOSTICS:
        require("license_number", "address")
        return DiagnosticCenter(
            user_id=user_id,
            center_name=request.center_name or request.name,
            phone=request.phone,
            email=request.email.lower(),
            license_number=request.license_number,
            address=request.address
        )

    require("license_number", "address")
    return MedicalShop(
        user_id=user_id,
        shop_name=request.shop_name or request.name,
        phone=request.phone,
        email=request.email.lower(),
        license_number=request.license_number,
        address=request.address,
        delivery_charges=request.delivery_charges or 0
    )

# ==================== DEPENDENCIES ====================

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """
    Dependency to get current authenticated user
    Use this in protected routes: current_user: User = Depends(get_current_user)
    """
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required"
        )

    payload = decode_token(credentials.credentials)

    if payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type"
        )

    user_id = payload.get("user_id")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload"
        )

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found"
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is deactivated"
        )

    return user


def require_roles(*roles: UserRole):
    """
    Route guard: Depends(require_roles(UserRole.PATIENT, UserRole.DOCTOR))
    Returns the current user when their role is allowed, 403 otherwise.
    """
    allowed = {r.value for r in roles}

    async def checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You do not have permission to perform this action"
            )
        return current_user

    return checker


def require_profile(user: User):
    """Role profile of the user, 404 if the row is missing"""
    profile = user.profile
    if profile is None:
        label = {
            UserRole.PATIENT.value: "Patient",
            UserRole.DOCTOR.value: "Doctor",
            UserRole.DIAGNOSTICS.value: "Diagnostic center",
            UserRole.SHOP.value: "Shop",
        }.get(user.role, "Profile")
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return profile

# ==================== API ENDPOINTS ====================

@router.post("/register", status_code=201, response_model=dict)
async def register(
    request: RegisterRequest,
    db: Session = Depends(get_db)
):
    """
    📝 Register a login identity and its role profile

    User and profile are written in one transaction.
    """
    email = request.email.lower()

    existing = db.query(User).filter(User.email == email).first()
    if existing:
        raise HTTPException(status_code=409, detail="Email already registered")

    try:
        user = User(
            email=email,
            password_hash=hash_password(request.password),
            role=request.role.value,
            is_active=True
        )
        db.add(user)
        db.flush()

        db.add(build_profile(user.id, request))
        db.commit()
        db.refresh(user)

    except HTTPException:
        db.rollback()
        raise
    except IntegrityError:
        # Lost a race against a concurrent registration of the same email
        db.rollback()
        raise HTTPException(status_code=409, detail="Email already registered")

    log_action(db, user.id, "USER_REGISTERED", "user", user.id, {"role": user.role})
    logger.info("Registered %s user %s", user.role, user.id)

    return {
        "success": True,
        "message": "Registration successful",
        "data": {
            "userId": user.id,
            "email": user.email,
            "role": user.role,
            "name": request.name,
            "token": issue_token(user)
        }
    }


@router.post("/login", response_model=dict)
async def login(
    request: LoginRequest,
    db: Session = Depends(get_db)
):
    """
    🔑 Login with email + password

    Unknown email and wrong password fail with the same message.
    """
    user = db.query(User).filter(User.email == request.email.lower()).first()

    if not user or not verify_password(request.password, user.password_hash):
        raise HTTPException(status_code=401, detail=INVALID_CREDENTIALS)

    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account is deactivated")

    user.last_login = datetime.now()
    db.commit()
    db.refresh(user)

    log_action(db, user.id, "LOGIN_SUCCESS", "auth", user.id, {"email": user.email})

    profile = user.profile
    return {
        "success": True,
        "message": "Login successful",
        "data": {
            "userId": user.id,
            "email": user.email,
            "role": user.role,
            "name": profile_name(profile),
            "token": issue_token(user),
            "profile": profile.to_dict() if profile else None
        }
    }


@router.get("/me", response_model=dict)
async def get_me(
    current_user: User = Depends(get_current_user)
):
    """👤 Role profile of the logged-in user"""
    profile = require_profile(current_user)
    return {
        "success": True,
        "data": {
            **profile.to_dict(),
            "email": current_user.email,
            "role": current_user.role,
            "last_login": current_user.last_login.isoformat() if current_user.last_login else None
        }
    }


@router.put("/change-password", response_model=dict)
async def change_password(
    request: ChangePasswordRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    if not verify_password(request.current_password, current_user.password_hash):
        raise HTTPException(status_code=401, detail="Current password is incorrect")

    current_user.password_hash = hash_password(request.new_password)
    db.commit()

    log_action(db, current_user.id, "PASSWORD_CHANGED", "user", current_user.id, {})

    return {
        "success": True,
        "message": "Password changed successfully"
    }
