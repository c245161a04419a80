from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.api import upload
from app.core.config import get_settings
from app.core.progress_channel import progress_channel
from app.services.storage import ensure_directories
from logging_config import configure_logging
import logging

logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    ensure_directories()
    logger.info(f"Progress channel ready ({type(progress_channel).__name__}), workspace: {settings.workspace_path}")
    yield

app = FastAPI(title="WebM Converter", lifespan=lifespan)

# CORS設定
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # 開発環境用。本番環境では適切に制限してください
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# APIルーターの登録
app.include_router(upload.router, prefix="/api", tags=["conversion"])
# WebSocketの進捗配信（プレフィックスなし）
app.include_router(upload.ws_router, tags=["progress"])

@app.get("/health")
async def health_check():
    return {"status": "healthy"}
