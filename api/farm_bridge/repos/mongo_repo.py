
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import CollectionInvalid, PyMongoError

from ..errors import StoreUnavailable
from ..models import TelemetryBucket, TelemetryRecord

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60


def record_to_document(record: TelemetryRecord) -> Dict[str, Any]:
    doc = record.model_dump(exclude={"device_id"})
    doc["metadata"] = {"nodeId": record.device_id}
    return doc


def document_to_record(doc: Dict[str, Any]) -> TelemetryRecord:
    return TelemetryRecord(
        device_id=doc["metadata"]["nodeId"],
        soil_raw=doc["soil_raw"],
        soil_pct=doc["soil_pct"],
        soil_temp=doc["soil_temp"],
        air_temp=doc["air_temp"],
        humidity=doc["humidity"],
        pump_on=doc["pump_on"],
        manual=doc["manual"],
        pump_life=doc["pump_life"],
        timestamp=doc["timestamp"],
    )


class MongoRepo:
    """
    Telemetry history in a MongoDB time-series collection.

    Every pymongo failure surfaces as StoreUnavailable. Calls are blocking;
    async callers run them in a worker thread.
    """

    def __init__(
        self,
        uri: str,
        db_name: str,
        collection: str = "telemetry",
        retention_days: int = 60,
        timeout_ms: int = 5000,
        client: Optional[MongoClient] = None,
    ) -> None:
        self.client = client or MongoClient(
            uri,
            serverSelectionTimeoutMS=timeout_ms,  # don't hang forever if the DB is down
            socketTimeoutMS=45000,
            timeoutMS=timeout_ms,
            tz_aware=True,
        )
        self.db = self.client[db_name]
        self.collection_name = collection
        self.telemetry = self.db[collection]
        self.retention_seconds = retention_days * DAY_SECONDS

    def ensure_schema(self) -> None:
        """Ping the server and create the time-series collection if it is missing."""
        try:
            self.client.admin.command("ping")
            if self.collection_name not in self.db.list_collection_names():
                try:
                    self.db.create_collection(
                        self.collection_name,
                        timeseries={"timeField": "timestamp", "metaField": "metadata", "granularity": "minutes"},
                        expireAfterSeconds=self.retention_seconds,
                    )
                    logger.info("[store] created time-series collection %s", self.collection_name)
                except CollectionInvalid:
                    pass  # created concurrently
            self.telemetry.create_index([("metadata.nodeId", ASCENDING), ("timestamp", DESCENDING)])
        except PyMongoError as exc:
            raise StoreUnavailable(f"cannot initialise history store: {exc}") from exc

    def ping(self) -> bool:
        try:
            self.client.admin.command("ping")
        except PyMongoError:
            return False
        return True

    def append(self, record: TelemetryRecord) -> None:
        try:
            self.telemetry.insert_one(record_to_document(record))
        except PyMongoError as exc:
            raise StoreUnavailable(f"insert failed: {exc}") from exc

    def query_range(
        self,
        device_id: str,
        start: datetime,
        end: datetime,
        limit: Optional[int] = None,
    ) -> List[TelemetryRecord]:
        try:
            cur = self.telemetry.find(
                {"metadata.nodeId": device_id, "timestamp": {"$gte": start, "$lt": end}},
                {"_id": 0},
            ).sort("timestamp", ASCENDING)
            if limit:
                cur = cur.limit(limit)
            return [document_to_record(doc) for doc in cur]
        except PyMongoError as exc:
            raise StoreUnavailable(f"range query failed: {exc}") from exc

    def query_latest(self, device_id: str, limit: int = 100) -> List[TelemetryRecord]:
        """Newest `limit` records, returned oldest first for charting."""
        try:
            cur = self.telemetry.find({"metadata.nodeId": device_id}, {"_id": 0}).sort("timestamp", DESCENDING).limit(limit)
            docs = list(cur)
        except PyMongoError as exc:
            raise StoreUnavailable(f"history query failed: {exc}") from exc
        docs.reverse()
        return [document_to_record(doc) for doc in docs]

    def query_bucketed(
        self,
        device_id: str,
        start: datetime,
        end: datetime,
        bucket_seconds: int,
    ) -> List[TelemetryBucket]:
        if bucket_seconds <= 0:
            raise ValueError("bucket_seconds must be positive")
        pipeline = [
            {"$match": {"metadata.nodeId": device_id, "timestamp": {"$gte": start, "$lt": end}}},
            {
                "$group": {
                    "_id": {"$dateTrunc": {"date": "$timestamp", "unit": "second", "binSize": bucket_seconds}},
                    "soil_pct": {"$avg": "$soil_pct"},
                    "soil_temp": {"$avg": "$soil_temp"},
                    "air_temp": {"$avg": "$air_temp"},
                    "humidity": {"$avg": "$humidity"},
                    "pump_on": {"$max": "$pump_on"},
                    "samples": {"$sum": 1},
                }
            },
            {"$sort": {"_id": 1}},
        ]
        try:
            rows = list(self.telemetry.aggregate(pipeline))
        except PyMongoError as exc:
            raise StoreUnavailable(f"bucketed query failed: {exc}") from exc
        return [
            TelemetryBucket(
                timestamp=row["_id"],
                soil_pct=row.get("soil_pct"),
                soil_temp=row.get("soil_temp"),
                air_temp=row.get("air_temp"),
                humidity=row.get("humidity"),
                pump_on=bool(row.get("pump_on")),
                samples=row.get("samples", 0),
            )
            for row in rows
        ]

    def close(self) -> None:
        self.client.close()
