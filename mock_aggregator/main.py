"""Mock aggregator serving canned accounts and paged transaction changes per access token"""

import json
import os
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

app = FastAPI(title="Mock Aggregator", version="1.0.0")
# Support both local development and Docker
DATA_DIR = Path("/aggregator_stub") if os.path.exists("/aggregator_stub") else Path(__file__).resolve().parent / "data"


class AccountsRequest(BaseModel):
    client_id: str
    secret: str
    access_token: str


class SyncRequest(AccountsRequest):
    cursor: Optional[str] = None


def load_item(access_token: str) -> dict:
    file = DATA_DIR / f"item_{access_token}.json"
    if not file.exists():
        raise HTTPException(status_code=400, detail={"error_code": "INVALID_ACCESS_TOKEN"})
    return json.loads(file.read_text())


def page_index(cursor: Optional[str]) -> int:
    if not cursor:
        return 0
    try:
        return int(cursor.removeprefix("page-"))
    except ValueError:
        raise HTTPException(status_code=400, detail={"error_code": "INVALID_CURSOR"})


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/accounts/get")
def get_accounts(body: AccountsRequest):
    item = load_item(body.access_token)
    return {"accounts": item["accounts"], "item": {"institution_id": item.get("institution_id")}}


@app.post("/transactions/sync")
def sync_transactions(body: SyncRequest):
    pages = load_item(body.access_token)["pages"]
    index = page_index(body.cursor)
    if index >= len(pages):
        return {"added": [], "modified": [], "removed": [], "next_cursor": body.cursor or "page-0", "has_more": False}

    page = pages[index]
    return {
        "added": page.get("added", []),
        "modified": page.get("modified", []),
        "removed": page.get("removed", []),
        "next_cursor": f"page-{index + 1}",
        "has_more": index + 1 < len(pages),
    }
