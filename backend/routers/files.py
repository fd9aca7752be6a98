# routers/files.py — Multipart uploads stored on local disk, served from /uploads
import logging
import mimetypes
import os
import secrets
import time
from typing import Optional

import aiofiles
import aiofiles.os
from fastapi import APIRouter, Depends, HTTPException, Query, UploadFile, File as FastAPIFile, Form
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

import config
from access import require_workspace_member, require_channel_member, get_or_404, is_privileged
from auth import get_current_user, CurrentUser
from database import get_db_session
from models import UploadedFile, Message, iso

logger = logging.getLogger("huddle.files")

router = APIRouter(prefix="/api/v1/files", tags=["Files"])

CHUNK_SIZE = 1024 * 1024


def stored_name_for(filename: Optional[str]) -> str:
    """``<epoch-ms>-<random>.<ext>``; the client's name never reaches the disk."""
    ext = os.path.splitext(filename or "")[1].lower().lstrip(".")
    ext = "".join(c for c in ext if c.isalnum())[:10]
    name = f"{int(time.time() * 1000)}-{secrets.token_hex(8)}"
    return f"{name}.{ext}" if ext else name


def _file_out(f: UploadedFile) -> dict:
    return {
        "id": f.id,
        "workspace_id": f.workspace_id,
        "message_id": f.message_id,
        "name": f.name,
        "mime_type": f.mime_type,
        "size": f.size,
        "url": f.url,
        "uploaded_by": f.uploaded_by,
        "created_at": iso(f.created_at),
    }


async def _remove_quietly(path: str) -> None:
    try:
        await aiofiles.os.remove(path)
    except OSError as e:
        logger.warning(f"Could not remove {path}: {e}")


async def _save_upload(upload: UploadFile, path: str) -> int:
    """Stream the upload to ``path``; removes the partial file and raises 413 past the limit."""
    size = 0
    async with aiofiles.open(path, "wb") as out:
        while True:
            chunk = await upload.read(CHUNK_SIZE)
            if not chunk:
                break
            size += len(chunk)
            if size > config.MAX_UPLOAD_BYTES:
                break
            await out.write(chunk)
    if size > config.MAX_UPLOAD_BYTES:
        await _remove_quietly(path)
        raise HTTPException(status_code=413, detail=f"File exceeds {config.MAX_UPLOAD_BYTES} bytes")
    return size


@router.post("/upload", status_code=201)
async def upload_file(
    file: UploadFile = FastAPIFile(...),
    workspace_id: str = Form(...),
    message_id: Optional[str] = Form(default=None),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, workspace_id)
    if message_id:
        message = await get_or_404(db, Message, message_id, "Message")
        channel, _ = await require_channel_member(db, user, message.channel_id)
        if channel.workspace_id != workspace_id or message.user_id != user.id:
            raise HTTPException(status_code=403, detail="Files can only be attached to your own messages")

    os.makedirs(config.UPLOAD_DIR, exist_ok=True)
    stored_name = stored_name_for(file.filename)
    path = os.path.join(config.UPLOAD_DIR, stored_name)
    size = await _save_upload(file, path)

    record = UploadedFile(
        workspace_id=workspace_id,
        uploaded_by=user.id,
        message_id=message_id,
        name=file.filename or stored_name,
        stored_name=stored_name,
        mime_type=file.content_type or mimetypes.guess_type(file.filename or "")[0],
        size=size,
        url=f"{config.UPLOAD_URL_PREFIX}/{stored_name}",
    )
    db.add(record)
    try:
        await db.commit()
    except Exception:
        # No row points at the file, so it would never be cleaned up
        await _remove_quietly(path)
        raise
    logger.info(f"Stored upload {stored_name} ({size} bytes) for ws={workspace_id[:8]}")
    return _file_out(record)


@router.get("")
async def list_files(
    workspace_id: str = Query(...),
    channel_id: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    await require_workspace_member(db, user, workspace_id)
    stmt = select(UploadedFile).where(UploadedFile.workspace_id == workspace_id)
    if channel_id:
        await require_channel_member(db, user, channel_id)
        stmt = stmt.join(Message, Message.id == UploadedFile.message_id).where(Message.channel_id == channel_id)

    total = (await db.execute(select(func.count()).select_from(stmt.subquery()))).scalar() or 0
    files = (await db.execute(
        stmt.order_by(UploadedFile.created_at.desc()).offset(offset).limit(limit)
    )).scalars().all()
    return {"files": [_file_out(f) for f in files], "total": total}


@router.delete("/{file_id}")
async def delete_file(
    file_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    record = await get_or_404(db, UploadedFile, file_id, "File")
    membership = await require_workspace_member(db, user, record.workspace_id)
    if record.uploaded_by != user.id and not is_privileged(membership):
        raise HTTPException(status_code=403, detail="Only the uploader or a workspace admin can delete this file")

    stored_name = record.stored_name
    await db.delete(record)
    await db.commit()

    await _remove_quietly(os.path.join(config.UPLOAD_DIR, stored_name))
    return {"file_id": file_id, "status": "deleted"}
