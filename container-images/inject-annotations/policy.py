from collections.abc import Iterable

NAMESPACE_SYSTEM = "kube-system"
NAMESPACE_PUBLIC = "kube-public"

KUBE_SYSTEM_NAMESPACES = (NAMESPACE_SYSTEM, NAMESPACE_PUBLIC)


def should_inject(
    namespace: str, skip_namespaces: Iterable[str] = KUBE_SYSTEM_NAMESPACES
) -> bool:
    """Decide whether pods in `namespace` should receive annotations.

    Pods in the Kubernetes system namespaces are never touched, since the
    webhook also sees control plane components. Only exact matches count.
    """

    return namespace not in tuple(skip_namespaces)
