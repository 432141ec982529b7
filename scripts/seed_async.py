"""
Async seeding script: creates tenants and users and uploads a generated avatar for each.

Usage:
    python scripts/seed_async.py --tenants 2 --users 10 --base-url http://localhost:8000

The API must be running and reachable at the provided base URL.
"""

import argparse
import asyncio
import io
import os
import random
import uuid

import httpx
from PIL import Image

DEFAULT_BASE_URL = os.getenv("SEED_BASE_URL", "http://localhost:8000")


def _avatar_bytes(edge: int = 256) -> bytes:
    # noise keeps the compression ratio inside the decompression-bomb limit
    image = Image.frombytes("RGB", (edge, edge), os.urandom(edge * edge * 3))
    buf = io.BytesIO()
    image.save(buf, "JPEG", quality=90)
    return buf.getvalue()


async def create_tenant(client: httpx.AsyncClient, name: str) -> int:
    resp = await client.post("/tenants/", json={"name": name})
    resp.raise_for_status()
    return resp.json()["id"]


async def create_user(client: httpx.AsyncClient, tenant_id: int, name: str) -> int:
    resp = await client.post("/users/", json={"tenant_id": tenant_id, "name": name})
    resp.raise_for_status()
    return resp.json()["id"]


async def upload_avatar(client: httpx.AsyncClient, user_id: int) -> int:
    files = {"file": (f"avatar-{user_id}.jpg", _avatar_bytes(), "image/jpeg")}
    resp = await client.post(f"/users/{user_id}/media/avatar", files=files)
    resp.raise_for_status()
    return resp.status_code


async def seed(base_url: str, tenants: int, users: int) -> None:
    async with httpx.AsyncClient(base_url=base_url, timeout=30.0) as client:
        tenant_ids = [
            await create_tenant(client, f"Tenant {uuid.uuid4().hex[:6]}") for _ in range(tenants)
        ]
        user_ids = [
            await create_user(client, random.choice(tenant_ids), f"User {uuid.uuid4().hex[:6]}")
            for _ in range(users)
        ]
        statuses = await asyncio.gather(*(upload_avatar(client, uid) for uid in user_ids))

    stored = sum(1 for s in statuses if s == 201)
    print(
        f"Seeded {len(tenant_ids)} tenants and {len(user_ids)} users "
        f"({stored} avatars stored, {len(statuses) - stored} queued) to {base_url}"
    )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Async seeder for the media pipeline API")
    parser.add_argument("--base-url", default=DEFAULT_BASE_URL, help="API base URL")
    parser.add_argument("--tenants", type=int, default=2, help="Number of tenants to create")
    parser.add_argument("--users", type=int, default=10, help="Number of users to create")
    return parser.parse_args()


def main():
    args = parse_args()
    asyncio.run(seed(base_url=args.base_url, tenants=args.tenants, users=args.users))


if __name__ == "__main__":
    main()
