"""Convergence steps that bring a node's OS to kubeadm-ready state.

Every step pairs a read-only verification script with an idempotent apply
script. Both run as root. A verification exiting 0 means the step already
holds on the node.
"""

from dataclasses import dataclass

STRICT = "set -euo pipefail\n"


@dataclass(frozen=True)
class ConvergenceStep:
    """One idempotent configuration action and the predicate confirming it."""

    name: str
    description: str
    apply: str
    verify: str


KERNEL_MODULES = ConvergenceStep(
    name="kernel-modules",
    description="Load overlay and br_netfilter and persist them across reboots",
    apply=STRICT
    + """printf 'overlay\\nbr_netfilter\\n' > /etc/modules-load.d/k8s.conf
modprobe overlay
modprobe br_netfilter
""",
    verify="""grep -qx overlay /etc/modules-load.d/k8s.conf \\
  && grep -qx br_netfilter /etc/modules-load.d/k8s.conf \\
  && test -d /sys/module/overlay \\
  && test -d /sys/module/br_netfilter
""",
)

SYSCTL_KEYS = {
    "net.bridge.bridge-nf-call-iptables": "1",
    "net.bridge.bridge-nf-call-ip6tables": "1",
    "net.ipv4.ip_forward": "1",
}

SYSCTL = ConvergenceStep(
    name="sysctl",
    description="Enable bridged traffic filtering and IPv4 forwarding",
    apply=STRICT
    + "cat > /etc/sysctl.d/k8s.conf <<'EOF'\n"
    + "".join(f"{key} = {value}\n" for key, value in SYSCTL_KEYS.items())
    + "EOF\nsysctl --system >/dev/null\n",
    verify="test -f /etc/sysctl.d/k8s.conf"
    + "".join(f' \\\n  && [ "$(sysctl -n {key})" = "{value}" ]' for key, value in SYSCTL_KEYS.items())
    + "\n",
)

CONTAINER_RUNTIME = ConvergenceStep(
    name="container-runtime",
    description="Install containerd",
    apply=STRICT
    + """export DEBIAN_FRONTEND=noninteractive
apt-get update -q
apt-get install -y -q containerd
""",
    verify="dpkg -s containerd >/dev/null 2>&1 && command -v containerd >/dev/null\n",
)

RUNTIME_CONFIG = ConvergenceStep(
    name="runtime-config",
    description="Write the default containerd config with the systemd cgroup driver",
    apply=STRICT
    + """mkdir -p /etc/containerd
containerd config default > /etc/containerd/config.toml
sed -i 's/SystemdCgroup = false/SystemdCgroup = true/' /etc/containerd/config.toml
systemctl restart containerd
""",
    verify="""grep -q 'SystemdCgroup = true' /etc/containerd/config.toml \\
  && systemctl is-active --quiet containerd
""",
)

KUBE_PACKAGES = ("kubelet", "kubeadm", "kubectl")


def kubernetes_packages_step(version: str) -> ConvergenceStep:
    """Register the pkgs.k8s.io source for ``version`` (e.g. ``v1.30``) and install pinned tools."""
    repo = f"https://pkgs.k8s.io/core:/stable:/{version}/deb/"
    packages = " ".join(KUBE_PACKAGES)
    return ConvergenceStep(
        name="kubernetes-packages",
        description=f"Install {packages} from the {version} channel and hold them",
        apply=STRICT
        + f"""export DEBIAN_FRONTEND=noninteractive
apt-get update -q
apt-get install -y -q apt-transport-https ca-certificates curl gpg
mkdir -p -m 755 /etc/apt/keyrings
curl -fsSL {repo}Release.key | gpg --batch --yes --dearmor -o /etc/apt/keyrings/kubernetes-apt-keyring.gpg
echo 'deb [signed-by=/etc/apt/keyrings/kubernetes-apt-keyring.gpg] {repo} /' > /etc/apt/sources.list.d/kubernetes.list
apt-get update -q
apt-get install -y -q {packages}
apt-mark hold {packages}
""",
        verify=f"""grep -qF '{repo}' /etc/apt/sources.list.d/kubernetes.list || exit 1
held="$(apt-mark showhold)"
for pkg in {packages}; do
  dpkg -s "$pkg" >/dev/null 2>&1 || exit 1
  echo "$held" | grep -qx "$pkg" || exit 1
done
""",
    )


KUBELET_SERVICE = ConvergenceStep(
    name="kubelet-service",
    description="Enable the kubelet service",
    apply=STRICT + "systemctl enable --now kubelet\n",
    verify="systemctl is-enabled --quiet kubelet\n",
)


def default_steps(kubernetes_version: str = "v1.30") -> list[ConvergenceStep]:
    """The node preparation sequence, in application order."""
    return [
        KERNEL_MODULES,
        SYSCTL,
        CONTAINER_RUNTIME,
        RUNTIME_CONFIG,
        kubernetes_packages_step(kubernetes_version),
        KUBELET_SERVICE,
    ]
