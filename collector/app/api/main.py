from fastapi import FastAPI
from .routes import cron

app = FastAPI(title="Auction Collector API", version="0.1.0")

app.include_router(cron.router, prefix="/cron", tags=["cron"])
