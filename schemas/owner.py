from pydantic import BaseModel


class TenantCreate(BaseModel):
    name : str


class TenantRead(BaseModel):
    id : int
    name : str

    class Config:
        from_attributes = True


class UserCreate(BaseModel):
    tenant_id : int
    name : str


class UserRead(BaseModel):
    id : int
    tenant_id : int
    name : str
    avatar_version : int

    class Config:
        from_attributes = True
