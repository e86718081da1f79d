from fastapi import HTTPException

from ..services import inventory


def inventory_http_error(e: inventory.InventoryError) -> HTTPException:
    if isinstance(e, inventory.NotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (inventory.NotPending, inventory.InsufficientQuantity, inventory.StaleEquipment)):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))
