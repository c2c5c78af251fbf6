from dataclasses import dataclass
from typing import Dict, List, Any, Optional

# 注解
ANNOTATION_PREFIX = "kube-plex.io/"
ANNOTATION_ENABLED = ANNOTATION_PREFIX + "enabled"
ANNOTATION_PMS_SERVICE = ANNOTATION_PREFIX + "pms-service"
ANNOTATION_DATA_PVC = ANNOTATION_PREFIX + "data-pvc"
ANNOTATION_CONFIG_PVC = ANNOTATION_PREFIX + "config-pvc"
ANNOTATION_TRANSCODE_PVC = ANNOTATION_PREFIX + "transcode-pvc"
ANNOTATION_PMS_CONTAINER = ANNOTATION_PREFIX + "pms-container"
ANNOTATION_PMS_IMAGE = ANNOTATION_PREFIX + "pms-image"
ANNOTATION_KUBE_PLEX_IMAGE = ANNOTATION_PREFIX + "kube-plex-image"

# 默认值
DEFAULT_KUBE_PLEX_IMAGE = "ghcr.io/adamjacobmuller/kube-plex:latest"
DEFAULT_PMS_PORT = 32400

# 卷和挂载
KUBE_PLEX_BINARY_VOLUME = "kube-plex-binary"
KUBE_PLEX_BINARY_MOUNT = "/shared"
KUBE_PLEX_INIT_CONTAINER = "kube-plex-init"
PLEX_TRANSCODER_PATH = "/usr/lib/plexmediaserver/Plex Transcoder"


class MutationError(Exception):
    """变更Pod失败的基类"""


class ConfigurationError(MutationError):
    """注解和卷都无法解析出必需的配置"""


class ContainerNotFoundError(MutationError):
    """Pod中找不到PMS容器"""


@dataclass(frozen=True)
class Config:
    """从注解和Pod规格中解析出的配置，空字符串表示下游省略"""
    pms_service: str = ""
    data_pvc: str = ""
    config_pvc: str = ""
    transcode_pvc: str = ""
    pms_container: str = ""
    pms_image: str = ""
    kube_plex_image: str = ""
    namespace: str = ""


def get_annotations(pod: Dict[str, Any]) -> Dict[str, str]:
    return (pod.get("metadata") or {}).get("annotations") or {}


def get_spec(pod: Dict[str, Any]) -> Dict[str, Any]:
    return pod.get("spec") or {}


def get_containers(pod: Dict[str, Any]) -> List[Dict[str, Any]]:
    return get_spec(pod).get("containers") or []


def should_mutate(pod: Dict[str, Any]) -> bool:
    """检查Pod是否通过注解启用了kube-plex"""
    annotations = get_annotations(pod)
    value = annotations.get(ANNOTATION_ENABLED)
    if not isinstance(value, str):
        return False
    return value.lower() == "true"


def extract_config(pod: Dict[str, Any], namespace: str) -> Config:
    """从Pod注解和规格中提取配置

    注解优先，缺少的PVC再根据卷名自动检测。
    """
    annotations = get_annotations(pod)

    pvcs = {
        "data": annotations.get(ANNOTATION_DATA_PVC, ""),
        "config": annotations.get(ANNOTATION_CONFIG_PVC, ""),
        "transcode": annotations.get(ANNOTATION_TRANSCODE_PVC, ""),
    }

    # 注解没有指定时，从卷中自动检测PVC
    if not all(pvcs.values()):
        pvcs = detect_pvcs(pod, pvcs)

    if not pvcs["transcode"]:
        raise ConfigurationError(
            f"transcode PVC is required: set {ANNOTATION_TRANSCODE_PVC} annotation"
        )

    containers = get_containers(pod)

    # 默认使用第一个容器
    pms_container = annotations.get(ANNOTATION_PMS_CONTAINER, "")
    if not pms_container and containers:
        pms_container = containers[0].get("name", "")

    # 默认使用PMS容器的镜像
    pms_image = annotations.get(ANNOTATION_PMS_IMAGE, "")
    if not pms_image:
        container = find_container(pod, pms_container)
        if container is not None:
            pms_image = container.get("image", "")

    kube_plex_image = annotations.get(ANNOTATION_KUBE_PLEX_IMAGE, "") or DEFAULT_KUBE_PLEX_IMAGE

    return Config(
        pms_service=annotations.get(ANNOTATION_PMS_SERVICE, ""),
        data_pvc=pvcs["data"],
        config_pvc=pvcs["config"],
        transcode_pvc=pvcs["transcode"],
        pms_container=pms_container,
        pms_image=pms_image,
        kube_plex_image=kube_plex_image,
        namespace=namespace,
    )


def detect_pvcs(pod: Dict[str, Any], pvcs: Dict[str, str]) -> Dict[str, str]:
    """根据卷名(data/config/transcode)检测PVC，不覆盖已有的值"""
    detected = dict(pvcs)
    for volume in get_spec(pod).get("volumes") or []:
        claim = volume.get("persistentVolumeClaim")
        if not claim:
            continue
        role = (volume.get("name") or "").lower()
        if role in detected and not detected[role]:
            detected[role] = claim.get("claimName", "")
    return detected


def find_container_index(pod: Dict[str, Any], name: str) -> int:
    for i, container in enumerate(get_containers(pod)):
        if container.get("name") == name:
            return i
    return -1


def find_container(pod: Dict[str, Any], name: str) -> Optional[Dict[str, Any]]:
    index = find_container_index(pod, name)
    if index == -1:
        return None
    return get_containers(pod)[index]


def append_op(path: str, exists: bool, value: Any) -> Dict[str, Any]:
    """向数组追加一个元素

    JSON Patch只能向已存在的数组追加，数组为空时直接添加整个数组。
    """
    if not exists:
        return {"op": "add", "path": path, "value": [value]}
    return {"op": "add", "path": f"{path}/-", "value": value}


def create_patch(pod: Dict[str, Any], config: Config) -> List[Dict[str, Any]]:
    """创建变更Pod的JSON补丁

    所有路径和数组是否为空都按原始Pod计算。
    """
    index = find_container_index(pod, config.pms_container)
    if index == -1:
        raise ContainerNotFoundError(f'container "{config.pms_container}" not found')

    spec = get_spec(pod)
    container = get_containers(pod)[index]

    patch = [
        add_volume(spec),
        add_init_container(spec, config),
        add_volume_mount(container, index),
        add_lifecycle_hook(container, index),
    ]
    patch.extend(add_env_vars(container, index, build_env_vars(config)))
    return patch


def add_volume(spec: Dict[str, Any]) -> Dict[str, Any]:
    volume = {"name": KUBE_PLEX_BINARY_VOLUME, "emptyDir": {}}
    return append_op("/spec/volumes", bool(spec.get("volumes")), volume)


def add_init_container(spec: Dict[str, Any], config: Config) -> Dict[str, Any]:
    init_container = {
        "name": KUBE_PLEX_INIT_CONTAINER,
        "image": config.kube_plex_image,
        "command": ["cp", "/kube-plex", f"{KUBE_PLEX_BINARY_MOUNT}/kube-plex"],
        "volumeMounts": [binary_volume_mount()],
    }
    return append_op("/spec/initContainers", bool(spec.get("initContainers")), init_container)


def add_volume_mount(container: Dict[str, Any], index: int) -> Dict[str, Any]:
    path = f"/spec/containers/{index}/volumeMounts"
    return append_op(path, bool(container.get("volumeMounts")), binary_volume_mount())


def binary_volume_mount() -> Dict[str, str]:
    return {"name": KUBE_PLEX_BINARY_VOLUME, "mountPath": KUBE_PLEX_BINARY_MOUNT}


def transcoder_command() -> List[str]:
    # 等待转码器出现后再替换
    return [
        "/bin/sh", "-c",
        f'until [ -f "{PLEX_TRANSCODER_PATH}" ]; do sleep 1; done; '
        f'cp "{KUBE_PLEX_BINARY_MOUNT}/kube-plex" "{PLEX_TRANSCODER_PATH}"',
    ]


def add_lifecycle_hook(container: Dict[str, Any], index: int) -> Dict[str, Any]:
    """添加postStart钩子，已有lifecycle时保留preStop并覆盖postStart"""
    path = f"/spec/containers/{index}/lifecycle"
    lifecycle = {"postStart": {"exec": {"command": transcoder_command()}}}

    existing = container.get("lifecycle")
    if existing is not None:
        if existing.get("preStop") is not None:
            lifecycle["preStop"] = existing["preStop"]
        return {"op": "replace", "path": path, "value": lifecycle}

    return {"op": "add", "path": path, "value": lifecycle}


def add_env_vars(container: Dict[str, Any], index: int, env_vars: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    path = f"/spec/containers/{index}/env"
    exists = bool(container.get("env"))
    patch = []
    for env in env_vars:
        patch.append(append_op(path, exists, env))
        # 第一次添加后数组已经存在
        exists = True
    return patch


def pms_internal_address(config: Config) -> str:
    if "://" in config.pms_service:
        return config.pms_service
    return f"http://{config.pms_service}.{config.namespace}.svc:{DEFAULT_PMS_PORT}"


def build_env_vars(config: Config) -> List[Dict[str, Any]]:
    env_vars = [
        {"name": "PMS_IMAGE", "value": config.pms_image},
        {"name": "TRANSCODE_PVC", "value": config.transcode_pvc},
        {
            "name": "KUBE_NAMESPACE",
            "valueFrom": {
                "fieldRef": {
                    "fieldPath": "metadata.namespace"
                }
            }
        },
    ]

    if config.data_pvc:
        env_vars.append({"name": "DATA_PVC", "value": config.data_pvc})
    if config.config_pvc:
        env_vars.append({"name": "CONFIG_PVC", "value": config.config_pvc})
    if config.pms_service:
        env_vars.append({"name": "PMS_INTERNAL_ADDRESS", "value": pms_internal_address(config)})

    return env_vars
