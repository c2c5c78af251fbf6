import os
import logging
from typing import Any

logger = logging.getLogger("kube-plex-webhook")


def get_env_or_default(key: str, default: str) -> str:
    """从环境变量获取值，如果不存在或为空则使用默认值"""
    return os.environ.get(key) or default


def get_env_int(key: str, default: int) -> int:
    """从环境变量获取整数"""
    value = os.environ.get(key)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring invalid integer for {key}: {value!r}")
        return default


def log_admission_request(request: Any) -> None:
    """记录admission请求的详细信息"""
    logger.info(
        f"AdmissionReview for Kind={request.kind}, Namespace={request.namespace}, "
        f"Name={request.name}, UID={request.uid}, Operation={request.operation}"
    )
