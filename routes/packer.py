# routes/packer.py

from typing import List

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

import schemas
from database import get_db
from crud import packer as crud_packer

router = APIRouter(
    prefix="/api/packer",
    tags=["Packer"],
    responses={404: {"description": "Not found"}},
)


@router.get("/orders", response_model=List[schemas.PackerOrder])
def get_packer_orders(db: Session = Depends(get_db)):
    """Open orders with line items, computed order status and transfer summary."""
    return crud_packer.get_packer_orders(db)


@router.get("/orders/{order_id}", response_model=schemas.PackerOrder)
def get_packer_order(order_id: int, db: Session = Depends(get_db)):
    return crud_packer.get_packer_order(db, order_id)


@router.patch("/orders/{order_id}/status")
def update_order_status(order_id: int, body: schemas.OrderStatusUpdate, db: Session = Depends(get_db)):
    order = crud_packer.update_order_status(db, order_id, body.status)
    return {"success": True, "status": order.status}


@router.patch("/orders/{order_id}/note")
def update_order_note(order_id: int, body: schemas.OrderNoteUpdate, db: Session = Depends(get_db)):
    order = crud_packer.update_order_note(db, order_id, body.note)
    return {"success": True, "note": order.note}


@router.post("/orders/{order_id}/complete")
def complete_order(order_id: int, body: schemas.OrderComplete, db: Session = Depends(get_db)):
    order = crud_packer.complete_order(db, order_id, body)
    return {"success": True, "status": order.status}


@router.delete("/orders/{order_id}")
def delete_order(order_id: int, request: Request):
    """Removes the order from the app entirely, transfer records included."""
    result = request.app.state.reconciler.purge(order_id, reason="deleted")
    return {"success": True, "result": result.to_dict()}


@router.patch("/items/{line_item_id}/packer-status", response_model=schemas.LineItem)
def update_packer_status(line_item_id: int, body: schemas.PackerStatusUpdate, db: Session = Depends(get_db)):
    return crud_packer.update_packer_status(db, line_item_id, body.status)


@router.patch("/items/{line_item_id}/update-weight")
def update_weight(line_item_id: int, body: schemas.WeightUpdate, request: Request, db: Session = Depends(get_db)):
    return crud_packer.update_line_item_weight(db, line_item_id, body.weight, request.app.state.shopify)
