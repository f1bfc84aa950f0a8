"""
Aggregation pipelines behind the dashboards.

Every figure here is computed by MongoDB: orders are unwound to one document
per line item, each line is joined to its medicine, and a line is worth
medicine.price * items.quantity.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

PENDING = "requested"
PAID = "paid"

LINE_TOTAL = {"$multiply": ["$medicine.price", "$items.quantity"]}


def line_items_pipeline(match: Optional[Dict[str, Any]] = None, seller: Optional[str] = None) -> List[Dict[str, Any]]:
    pipeline: List[Dict[str, Any]] = []
    if match:
        pipeline.append({"$match": match})
    if seller:
        pipeline.append({"$match": {"items.seller": seller}})
    pipeline += [
        {"$unwind": "$items"},
        {
            "$lookup": {
                "from": "medicines",
                "localField": "items.medicineId",
                "foreignField": "_id",
                "as": "medicine",
            }
        },
        {"$unwind": "$medicine"},
    ]
    if seller:
        # an order can mix sellers, keep only this seller's lines
        pipeline.append({"$match": {"items.seller": seller}})
    return pipeline


def status_totals(db, match: Optional[Dict[str, Any]] = None, seller: Optional[str] = None) -> Dict[str, float]:
    pipeline = line_items_pipeline(match, seller) + [
        {"$group": {"_id": "$status", "total": {"$sum": LINE_TOTAL}}},
    ]
    totals = {doc["_id"]: doc["total"] for doc in db["orders"].aggregate(pipeline)}
    return {
        "paidTotal": totals.get(PAID, 0),
        "pendingTotal": totals.get(PENDING, 0),
    }


def admin_stats(db) -> Dict[str, Any]:
    stats: Dict[str, Any] = status_totals(db)
    stats["totalRevenue"] = stats["paidTotal"] + stats["pendingTotal"]
    stats["users"] = db["users"].count_documents({})
    stats["medicines"] = db["medicines"].count_documents({})
    stats["orders"] = db["orders"].count_documents({})
    return stats


def seller_stats(db, email: str) -> Dict[str, float]:
    return status_totals(db, seller=email)


def line_rows(db, match: Optional[Dict[str, Any]] = None, seller: Optional[str] = None) -> List[Dict[str, Any]]:
    """One row per order line, newest order first."""
    pipeline = line_items_pipeline(match, seller) + [
        {
            "$project": {
                "_id": 0,
                "orderId": "$_id",
                "transactionId": "$transactionId",
                "buyerEmail": "$email",
                "medicineId": "$items.medicineId",
                "medicineName": "$medicine.name",
                "sellerEmail": "$items.seller",
                "quantity": "$items.quantity",
                "unitPrice": "$medicine.price",
                "totalPrice": LINE_TOTAL,
                "status": "$status",
                "orderDate": "$orderDate",
            }
        },
        {"$sort": {"orderDate": -1}},
    ]
    return list(db["orders"].aggregate(pipeline))


def sales_report(db, start: Optional[datetime] = None, end: Optional[datetime] = None, status: Optional[str] = None) -> Dict[str, Any]:
    match: Dict[str, Any] = {}
    if start or end:
        date_filter: Dict[str, Any] = {}
        if start:
            date_filter["$gte"] = start
        if end:
            date_filter["$lte"] = end
        match["orderDate"] = date_filter
    if status:
        match["status"] = status
    rows = line_rows(db, match)
    total = 0
    for row in db["orders"].aggregate(
        line_items_pipeline(match) + [{"$group": {"_id": None, "total": {"$sum": LINE_TOTAL}}}]
    ):
        total = row["total"]
    return {"rows": rows, "totalSales": total}


def seller_payments(db, email: str) -> List[Dict[str, Any]]:
    return line_rows(db, seller=email)


def invoice(db, transaction_id: str) -> List[Dict[str, Any]]:
    return line_rows(db, {"transactionId": transaction_id})


def categories_with_counts(db) -> List[Dict[str, Any]]:
    pipeline = [
        {
            "$lookup": {
                "from": "medicines",
                "localField": "name",
                "foreignField": "category",
                "as": "medicines",
            }
        },
        {
            "$project": {
                "name": 1,
                "image": 1,
                "medicineCount": {"$size": "$medicines"},
            }
        },
        {"$sort": {"name": 1}},
    ]
    return list(db["categories"].aggregate(pipeline))
