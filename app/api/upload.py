from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse, StreamingResponse
from app.models.schemas import JobSnapshot, WebMConversionResponse, ConversionStatus, ProgressEvent
from app.core.config import get_settings
from app.core.exceptions import BroadcastFailure, ConversionFailed
from app.core.job_status import job_status_manager
from app.core.progress_channel import Subscription, progress_channel, topic_for
from app.services.converter import ConversionOrchestrator, conversion_orchestrator, run_conversion_job
from app.services.storage import media_type_for, resolve_converted_file, validate_job_id, WEBM_MEDIA_TYPE
from pathlib import Path
from typing import AsyncIterator, Dict, Optional
import asyncio
import contextlib
import json
import logging

# ロガーの設定
logger = logging.getLogger(__name__)

router = APIRouter()
ws_router = APIRouter()
settings = get_settings()

TERMINAL_STATUSES = (ConversionStatus.COMPLETE.value, ConversionStatus.ERROR.value)

def get_orchestrator() -> ConversionOrchestrator:
    return conversion_orchestrator

def queue_listener(loop: asyncio.AbstractEventLoop, queue: asyncio.Queue):
    """ワーカースレッドから配信されたイベントをイベントループのキューに渡すリスナー"""
    def listener(event: ProgressEvent) -> None:
        try:
            loop.call_soon_threadsafe(queue.put_nowait, event.to_payload())
        except RuntimeError as e:
            raise BroadcastFailure(f"Subscriber is gone: {str(e)}", job_id=event.job_id) from e
    return listener

async def progress_event_stream(job_id: str, keepalive_seconds: float) -> AsyncIterator[str]:
    """ジョブの進捗をSSE形式で配信する（購読前のイベントは配信しない）"""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    subscription = progress_channel.subscribe(topic_for(job_id), queue_listener(loop, queue))
    try:
        yield f": subscribed to {subscription.topic}\n\n"
        while True:
            try:
                payload = await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            yield f"data: {json.dumps(payload)}\n\n"
            if payload.get("status") in TERMINAL_STATUSES:
                break
    finally:
        progress_channel.unsubscribe(subscription)

@router.post("/convert-to-webm", response_model=WebMConversionResponse)
async def convert_to_webm(
    request: Request,
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    fileId: Optional[str] = Form(None),
    orchestrator: ConversionOrchestrator = Depends(get_orchestrator),
):
    """動画をアップロードし、WebMへの変換をバックグラウンドで開始する"""
    try:
        logger.info(f"ファイルアップロード開始: {file.filename} (fileId={fileId})")
        job = await run_in_threadpool(orchestrator.stage_input, file.file, fileId or None, file.filename)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except ConversionFailed as e:
        logger.error(f"アップロードエラー: {e.message}")
        raise HTTPException(
            status_code=500,
            detail=f"ファイルのアップロード中にエラーが発生しました: {e.message}"
        ) from e

    size = Path(job.input_path).stat().st_size
    background_tasks.add_task(run_conversion_job, orchestrator, job)

    file_name = Path(job.output_path).name
    base_url = settings.public_base_url or str(request.base_url)
    return WebMConversionResponse(
        fileName=file_name,
        fileId=job.job_id,
        fileDownloadUri=f"{base_url.rstrip('/')}/api/converted/{file_name}",
        fileType=WEBM_MEDIA_TYPE,
        size=str(size),
    )

@router.get("/conversion-status/{job_id}")
async def get_conversion_status(job_id: str):
    """ジョブの進捗を取得（SSE）"""
    try:
        validate_job_id(job_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    return StreamingResponse(
        progress_event_stream(job_id, settings.sse_keepalive_seconds),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        }
    )

@router.get("/job-status/{job_id}", response_model=JobSnapshot)
async def get_job_status(job_id: str):
    """ジョブの現在のステータスを取得"""
    job = job_status_manager.get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobSnapshot(
        fileId=job.job_id,
        status=job.status,
        percentComplete=job.percent_complete,
        message=job.message,
        resultFile=job.result_file,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )

@router.get("/converted/{file_name}")
async def download_converted_file(file_name: str):
    """変換済みファイルをダウンロード"""
    try:
        path = resolve_converted_file(file_name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except FileNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return FileResponse(path, media_type=media_type_for(file_name), filename=file_name)

async def _forward_payloads(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        payload = await queue.get()
        await websocket.send_json(payload)

async def _stop_sender(sender: asyncio.Task) -> None:
    """送信タスクを停止し、切断後の送信エラーも回収する"""
    sender.cancel()
    try:
        with contextlib.suppress(asyncio.CancelledError):
            await sender
    except Exception as e:
        logger.debug(f"WebSocket sender stopped with error: {str(e)}")

@ws_router.websocket("/ws/conversion")
async def conversion_socket(websocket: WebSocket):
    """
    接続後に {"action": "subscribe", "fileId": ...} を送信するとジョブの進捗を受信できる
    """
    await websocket.accept()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    subscriptions: Dict[str, Subscription] = {}
    sender = asyncio.create_task(_forward_payloads(websocket, queue))
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                request = json.loads(raw)
                action = request.get("action")
                job_id = validate_job_id(str(request.get("fileId", "")))
            except (ValueError, AttributeError) as e:
                await queue.put({"error": f"Invalid request: {str(e)}"})
                continue

            topic = topic_for(job_id)
            if action == "subscribe":
                if job_id not in subscriptions:
                    subscriptions[job_id] = progress_channel.subscribe(topic, queue_listener(loop, queue))
                await queue.put({"subscribed": topic})
            elif action == "unsubscribe":
                subscription = subscriptions.pop(job_id, None)
                if subscription is not None:
                    progress_channel.unsubscribe(subscription)
                await queue.put({"unsubscribed": topic})
            else:
                await queue.put({"error": f"Unknown action: {action}"})
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected ({len(subscriptions)} subscriptions)")
    finally:
        for subscription in subscriptions.values():
            progress_channel.unsubscribe(subscription)
        await _stop_sender(sender)
