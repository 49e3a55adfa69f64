"""Ingress controller detection.

Promotion of an App to an IngressController is a heuristic kept behind
the ``IngressControllerDetector`` protocol so deployments can plug their
own.  ``ImageSignatureDetector`` recognises the common controllers by
container image.
"""

from __future__ import annotations

from typing import Protocol

from clusterscope.models.state import App


class IngressControllerDetector(Protocol):
    """Decides whether an App is an ingress controller."""

    def detect(self, app: App) -> str | None:
        """Return the controller type, or None if *app* is not a controller."""
        ...


CONTROLLER_TRAEFIK = "traefik"
CONTROLLER_NGINX = "nginx"
CONTROLLER_HAPROXY = "haproxy"

# Image name fragments, checked in order.
_IMAGE_SIGNATURES: tuple[tuple[str, str], ...] = (
    ("traefik", CONTROLLER_TRAEFIK),
    ("ingress-nginx/controller", CONTROLLER_NGINX),
    ("nginx-ingress-controller", CONTROLLER_NGINX),
    ("haproxytech/kubernetes-ingress", CONTROLLER_HAPROXY),
    ("haproxy-ingress", CONTROLLER_HAPROXY),
)

# IngressClass ``spec.controller`` values served by each controller type.
INGRESS_CLASS_CONTROLLERS: dict[str, tuple[str, ...]] = {
    CONTROLLER_TRAEFIK: ("traefik.io/ingress-controller",),
    CONTROLLER_NGINX: ("k8s.io/ingress-nginx", "nginx.org/ingress-controller"),
    CONTROLLER_HAPROXY: ("haproxy.org/ingress-controller", "haproxy-ingress.github.io/controller"),
}

# Explicit opt-in/out on the workload's pod template.
CONTROLLER_TYPE_ANNOTATION = "clusterscope.io/ingress-controller"


def _image_name(image: str) -> str:
    """Strip the digest and tag from an image reference."""
    name = image.split("@", 1)[0]
    slash = name.rfind("/")
    colon = name.rfind(":")
    if colon > slash:
        name = name[:colon]
    return name.lower()


class ImageSignatureDetector:
    """Detects ingress controllers from their container images."""

    def __init__(self, signatures: tuple[tuple[str, str], ...] = _IMAGE_SIGNATURES) -> None:
        self._signatures = signatures

    def detect(self, app: App) -> str | None:
        annotated = app.pod_annotations.get(CONTROLLER_TYPE_ANNOTATION)
        if annotated is not None:
            # "none" (or empty) opts the workload out.
            return None if annotated in ("", "none") else annotated

        for image in app.images:
            name = _image_name(image)
            for fragment, controller_type in self._signatures:
                if fragment in name:
                    return controller_type
        return None
