import base64
import json
import logging
from dataclasses import dataclass
from typing import Dict, List, Any, Optional, Tuple

from .mutate import MutationError, ConfigurationError, should_mutate, extract_config, create_patch
from .utils import log_admission_request

logger = logging.getLogger("kube-plex-webhook")

ADMISSION_API_VERSION = "admission.k8s.io/v1"
ADMISSION_KIND = "AdmissionReview"


class DecodeError(Exception):
    """AdmissionReview无法解码"""


@dataclass(frozen=True)
class AdmissionRequest:
    """解码后的admission请求"""
    uid: str
    kind: str
    namespace: str
    name: str
    operation: str
    object: Optional[Any]


@dataclass(frozen=True)
class AdmissionDecoder:
    """AdmissionReview解码器，启动时创建一次并注入到应用中"""
    api_versions: Tuple[str, ...] = (ADMISSION_API_VERSION, "admission.k8s.io/v1beta1")
    kind: str = ADMISSION_KIND

    def decode(self, body: bytes) -> Optional[AdmissionRequest]:
        try:
            review = json.loads(body)
        except ValueError as e:
            raise DecodeError(f"invalid JSON: {e}") from e

        if not isinstance(review, dict):
            raise DecodeError("admission review must be a JSON object")

        api_version = review.get("apiVersion")
        if api_version and api_version not in self.api_versions:
            raise DecodeError(f"unsupported apiVersion {api_version!r}")
        kind = review.get("kind")
        if kind and kind != self.kind:
            raise DecodeError(f"unexpected kind {kind!r}, expected {self.kind}")

        request = review.get("request")
        if request is None:
            return None
        if not isinstance(request, dict):
            raise DecodeError("admission review request must be a JSON object")

        return AdmissionRequest(
            uid=request.get("uid", ""),
            kind=(request.get("kind") or {}).get("kind", ""),
            namespace=request.get("namespace", ""),
            name=request.get("name", ""),
            operation=request.get("operation", ""),
            object=request.get("object"),
        )


def process_admission_request(request: Optional[AdmissionRequest]) -> Dict[str, Any]:
    """处理Kubernetes admission请求"""
    if request is None:
        return create_admission_response(None, allowed=True)

    log_admission_request(request)
    uid = request.uid

    # 只处理Pod
    if request.kind != "Pod":
        logger.info(f"Skipping non-Pod resource: {request.kind}")
        return create_admission_response(uid, allowed=True)

    pod = request.object
    if not isinstance(pod, dict):
        logger.error(f"Could not unmarshal pod {request.namespace}/{request.name}")
        return create_admission_response(
            uid, allowed=False, message="could not unmarshal pod: object is not a JSON object"
        )

    pod_name = (pod.get("metadata") or {}).get("name") or request.name or "unknown"

    if not should_mutate(pod):
        logger.info(f"Skipping mutation for pod {request.namespace}/{pod_name} (not enabled)")
        return create_admission_response(uid, allowed=True)

    logger.info(f"Mutating pod {request.namespace}/{pod_name}")

    try:
        config = extract_config(pod, request.namespace)
        patch = create_patch(pod, config)
    except ConfigurationError as e:
        logger.error(f"Error extracting config for pod {request.namespace}/{pod_name}: {e}")
        return create_admission_response(uid, allowed=False, message=f"configuration error: {e}")
    except MutationError as e:
        logger.error(f"Error creating patch for pod {request.namespace}/{pod_name}: {e}")
        return create_admission_response(uid, allowed=False, message=f"could not create patch: {e}")

    patch_json = json.dumps(patch)
    logger.info(f"Patch for pod {request.namespace}/{pod_name}: {patch_json}")

    return create_admission_response(uid, allowed=True, patch=encode_patch(patch))


def encode_patch(patch: List[Dict[str, Any]]) -> str:
    return base64.b64encode(json.dumps(patch).encode()).decode()


def create_admission_response(
    uid: Optional[str],
    allowed: bool,
    patch: Optional[str] = None,
    message: Optional[str] = None,
) -> Dict[str, Any]:
    """创建admission响应"""
    response = {
        "apiVersion": ADMISSION_API_VERSION,
        "kind": ADMISSION_KIND,
        "response": {
            "allowed": allowed
        }
    }

    # 解码失败时没有uid
    if uid is not None:
        response["response"]["uid"] = uid

    if message:
        response["response"]["status"] = {"message": message}

    # 如果有补丁，添加到响应中
    if patch:
        response["response"]["patchType"] = "JSONPatch"
        response["response"]["patch"] = patch

    return response
