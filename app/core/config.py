from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Optional
import os

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # 作業用スペース設定
    workspace_path: str = "tmp_workspace"
    upload_dirname: str = "uploads"        # アップロードされた元ファイル (変換後に削除)
    converted_dirname: str = "converted"   # 変換済みWebMファイル

    # 外部エンコーダ設定
    encoder_binary: str = "ffmpeg"
    video_codec: str = "libvpx-vp9"
    audio_codec: str = "libopus"
    crf: int = 30
    encoder_timeout: Optional[float] = None  # None = タイムアウトなし
    probe_timeout: float = 30.0

    # ライブラリ変換 (PyAV) 設定
    library_video_codec: str = "libvpx-vp9"
    library_audio_codec: str = "libvorbis"
    library_video_bitrate: int = 500_000
    library_audio_bitrate: int = 96_000

    # 進捗配信設定
    sse_keepalive_seconds: float = 15.0
    job_retention_seconds: int = 3600

    public_base_url: str = ""
    log_level: str = "INFO"

    def get_upload_dir(self) -> str:
        """アップロードファイルの一時保存ディレクトリを取得"""
        return os.path.join(self.workspace_path, self.upload_dirname)

    def get_converted_dir(self) -> str:
        """変換済みファイルの保存ディレクトリを取得"""
        return os.path.join(self.workspace_path, self.converted_dirname)

@lru_cache()
def get_settings() -> Settings:
    return Settings()
