# routes/transfer.py

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

import schemas
from database import get_db
from crud import transfer as crud_transfer

router = APIRouter(
    prefix="/api/transfer",
    tags=["Transfer"],
    responses={404: {"description": "Not found"}},
)


@router.get("/items", response_model=List[schemas.TransferItem])
def get_transfer_items(status: Optional[str] = Query(None), db: Session = Depends(get_db)):
    return crud_transfer.get_transfers(db, status=status)


@router.get("/items/{transfer_id}/copy-text")
def get_copy_text(transfer_id: int, db: Session = Depends(get_db)):
    item = crud_transfer.get_transfer(db, transfer_id)
    return {"copy_text": crud_transfer.copy_text(item)}


@router.patch("/items/{transfer_id}", response_model=schemas.TransferItem)
def update_transfer_item(transfer_id: int, body: schemas.TransferUpdate, db: Session = Depends(get_db)):
    return crud_transfer.update_transfer(db, transfer_id, body)


@router.post("/items/{transfer_id}/split", response_model=schemas.TransferItem)
def split_transfer_item(transfer_id: int, body: schemas.TransferSplit, db: Session = Depends(get_db)):
    """Moves part of a transferring record to waiting; returns the transferring remainder."""
    return crud_transfer.split_transfer(db, transfer_id, body)


@router.post("/items/bulk-delete")
def bulk_delete_transfer_items(body: schemas.BulkDelete, db: Session = Depends(get_db)):
    deleted = crud_transfer.bulk_delete(db, body.ids)
    return {"success": True, "deleted": deleted}
