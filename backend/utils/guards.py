from fastapi import HTTPException
from bson import ObjectId

# -------------------------------
# ObjectId Guard
# -------------------------------

def parse_object_id(value: str, name: str = "id") -> ObjectId:
    try:
        return ObjectId(value)
    except Exception:
        raise HTTPException(status_code=400, detail=f"Invalid {name}")


# -------------------------------
# Order Guards
# -------------------------------

async def get_order_or_404(db, order_id: str) -> dict:
    order = await db.orders.find_one({"_id": parse_object_id(order_id, "order_id")})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def assert_order_owner(order: dict, user: dict):
    if str(order.get("user_id")) != str(user.get("_id")):
        raise HTTPException(
            status_code=403,
            detail="Unauthorized: Order does not belong to you",
        )
