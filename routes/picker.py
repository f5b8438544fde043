# routes/picker.py

from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

import schemas
from database import get_db
from crud import picker as crud_picker

router = APIRouter(
    prefix="/api/picker",
    tags=["Picker"],
    responses={404: {"description": "Not found"}},
)


@router.get("/items", response_model=List[schemas.PickerLineItem])
def get_picker_items(db: Session = Depends(get_db)):
    """Line items of every open order, newest first."""
    return crud_picker.get_picker_items(db)


@router.patch("/items/{line_item_id}/status", response_model=schemas.LineItem)
def update_item_status(line_item_id: int, body: schemas.PickerStatusUpdate, db: Session = Depends(get_db)):
    return crud_picker.update_picker_status(db, line_item_id, body.status)


@router.post("/items/{line_item_id}/split", response_model=schemas.LineItem)
def split_item(line_item_id: int, body: schemas.PickerSplit, db: Session = Depends(get_db)):
    """
    Partially picked row: keeps the picked quantity, the remainder becomes
    a new missing row with a transfer record. Returns the new row.
    """
    return crud_picker.split_line_item(db, line_item_id, body.picked_quantity)
