import logging
import re
from typing import List

from volume_autoscaler.domain.errors import InvalidTarget
from volume_autoscaler.domain.intent import LabelSelector, VolumeTarget
from volume_autoscaler.domain.volume_backend import VolumeBackend
from volume_autoscaler.domain.volume_info import VolumeInfo

logger = logging.getLogger(__name__)

_LABEL_KEY = re.compile(r"^([a-z0-9]([-a-z0-9.]*[a-z0-9])?/)?[A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?$")
_LABEL_VALUE = re.compile(r"^([A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?)?$")


def _check_key(key: str) -> str:
    if not key or len(key) > 316 or not _LABEL_KEY.match(key):
        raise InvalidTarget(f"invalid label key: {key!r}")
    return key


def _check_value(value: str) -> str:
    if len(value) > 63 or not _LABEL_VALUE.match(value):
        raise InvalidTarget(f"invalid label value: {value!r}")
    return value


def selector_to_string(selector: LabelSelector) -> str:
    """
    Renders a LabelSelector in the string form the list API accepts.
    An empty selector matches everything and renders as "".
    """
    parts = [f"{_check_key(k)}={_check_value(v)}" for k, v in sorted(selector.match_labels.items())]

    for req in selector.match_expressions:
        key = _check_key(req.key)
        values = [_check_value(v) for v in req.values]
        if req.operator in ("In", "NotIn"):
            if not values:
                raise InvalidTarget(f"operator {req.operator} on {key!r} needs at least one value")
            op = "in" if req.operator == "In" else "notin"
            parts.append(f"{key} {op} ({','.join(sorted(values))})")
        elif req.operator in ("Exists", "DoesNotExist"):
            if values:
                raise InvalidTarget(f"operator {req.operator} on {key!r} takes no values")
            parts.append(key if req.operator == "Exists" else f"!{key}")
        else:
            raise InvalidTarget(f"unknown selector operator: {req.operator!r}")

    return ",".join(parts)


def validate_target(target: VolumeTarget) -> None:
    has_name = bool(target.volume_name)
    has_selector = target.selector is not None
    if has_name == has_selector:
        raise InvalidTarget("target must specify exactly one of volumeName or selector")


def resolve_targets(backend: VolumeBackend, target: VolumeTarget, namespace: str) -> List[VolumeInfo]:
    """
    Expands the target into the PVCs currently present in `namespace`, ordered
    by name. No match is an empty list, not an error.
    """
    validate_target(target)

    if target.volume_name:
        volume = backend.get_volume(namespace, target.volume_name)
        if volume is None:
            logger.info(f"PVC {namespace}/{target.volume_name} not found")
            return []
        return [volume]

    label_selector = selector_to_string(target.selector)
    volumes = backend.list_volumes(namespace, label_selector)
    logger.debug(f"Selector {label_selector!r} matched {len(volumes)} PVCs in {namespace}")
    return sorted(volumes, key=lambda v: v.name)
