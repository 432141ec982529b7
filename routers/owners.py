from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_async_db
from models import Tenant, User
from schemas.owner import TenantCreate, TenantRead, UserCreate, UserRead

router = APIRouter(tags=["owners"])


@router.post("/tenants/", response_model=TenantRead, status_code=201)
async def create_tenant(tenant: TenantCreate, db: AsyncSession = Depends(get_async_db)):
    new_tenant = Tenant(name=tenant.name)
    db.add(new_tenant)
    await db.commit()
    await db.refresh(new_tenant)
    return new_tenant


@router.post("/users/", response_model=UserRead, status_code=201)
async def create_user(user: UserCreate, db: AsyncSession = Depends(get_async_db)):
    tenant = await db.get(Tenant, user.tenant_id)
    if not tenant:
        raise HTTPException(status_code=400, detail="Tenant does not exist.")
    new_user = User(tenant_id=user.tenant_id, name=user.name, avatar_version=0)
    db.add(new_user)
    await db.commit()
    await db.refresh(new_user)
    return new_user


@router.get("/users/{user_id}", response_model=UserRead)
async def get_user(user_id: int, db: AsyncSession = Depends(get_async_db)):
    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user
