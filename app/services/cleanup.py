import logging
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)

def remove_staged_input(path: Union[str, Path]) -> bool:
    """
    変換元の一時ファイルを削除する（失敗してもログのみ）

    Args:
        path: 一時ファイルのパス

    Returns:
        bool: 削除した場合True
    """
    path = Path(path)
    try:
        if path.exists():
            path.unlink()
            logger.info(f"Removed staged input: {path}")
            return True
    except OSError as e:
        logger.warning(f"Failed to remove staged input {path}: {str(e)}")
    return False
