from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pathlib import Path
import json
import os

app = FastAPI(title="Mock Ledger Server", version="1.0.0")


def data_dir() -> Path:
    # Support env override (tests), Docker volume, and local development
    if os.environ.get("LEDGER_STUB_DIR"):
        return Path(os.environ["LEDGER_STUB_DIR"])
    if os.path.exists("/ledger_stub"):
        return Path("/ledger_stub")
    return Path(__file__).resolve().parents[2] / "ledger_stub"


def _account_file(account_id: str) -> Path:
    file = data_dir() / f"transactions_{account_id}.json"
    if not file.exists():
        raise HTTPException(status_code=404, detail="account not found")
    return file

@app.get("/health")
def health(): return {"status": "ok"}

@app.post("/accounts/{account_id}/refresh")
def refresh(account_id: str):
    _account_file(account_id)
    return {"status": "refresh_requested", "account_id": account_id}

@app.get("/accounts/{account_id}/transactions")
def list_transactions(account_id: str):
    return JSONResponse(content=json.loads(_account_file(account_id).read_text()))
