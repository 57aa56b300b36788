"""Built-in command text for every pipeline step.

Scripts are either family-agnostic (a single string) or keyed by
distribution family. Placeholders use ``{{name}}`` so shell ``${VAR}``
expansions in the same text are left alone; see :func:`render`.
"""

from typing import Optional, Union

from clusterup.orchestrator.errors import UnsupportedDistribution

DEBIAN_FAMILY = frozenset({"ubuntu", "debian", "linuxmint", "raspbian"})
RHEL_FAMILY = frozenset(
    {"centos", "rhel", "rocky", "almalinux", "alma", "fedora", "ol", "openeuler", "kylin"}
)

DETECT_DISTRO = ". /etc/os-release && echo $ID"

IP_FORWARD_ASSERT = """\
sudo sysctl -w net.ipv4.ip_forward=1
test "$(cat /proc/sys/net/ipv4/ip_forward)" = "1"
"""

SYSTEM_PREP = """\
set -e
echo "=== Disabling swap ==="
sudo swapoff -a
sudo sed -i '/ swap / s/^\\(.*\\)$/#\\1/' /etc/fstab

echo "=== Time synchronization ==="
if command -v apt-get >/dev/null 2>&1; then
    sudo apt-get update -y
    sudo apt-get install -y chrony
    sudo systemctl enable --now chrony || sudo systemctl enable --now chronyd
elif command -v dnf >/dev/null 2>&1 || command -v yum >/dev/null 2>&1; then
    (command -v dnf >/dev/null 2>&1 && sudo dnf install -y chrony) || sudo yum install -y chrony
    sudo systemctl enable --now chronyd
fi

echo "=== Firewall ==="
if command -v ufw >/dev/null 2>&1; then
    sudo systemctl disable --now ufw || true
elif command -v firewall-cmd >/dev/null 2>&1; then
    sudo systemctl disable --now firewalld || true
fi

echo "=== SELinux ==="
if command -v setenforce >/dev/null 2>&1; then
    sudo setenforce 0 2>/dev/null || true
    sudo sed -i 's/^SELINUX=enforcing$/SELINUX=permissive/' /etc/selinux/config 2>/dev/null || true
fi

echo "=== Kernel modules ==="
printf 'overlay\\nbr_netfilter\\n' | sudo tee /etc/modules-load.d/k8s.conf
sudo modprobe overlay
sudo modprobe br_netfilter

echo "=== Kernel parameters ==="
printf 'net.ipv4.ip_forward = 1\\n' | sudo tee /etc/sysctl.d/99-kubernetes-ipforward.conf
printf 'net.bridge.bridge-nf-call-iptables = 1\\nnet.bridge.bridge-nf-call-ip6tables = 1\\n' \\
    | sudo tee /etc/sysctl.d/k8s.conf
sudo sysctl --system
sudo sysctl -w net.ipv4.ip_forward=1
"""

IP_FORWARD = """\
set -e
printf 'net.ipv4.ip_forward = 1\\n' | sudo tee /etc/sysctl.d/99-kubernetes-ipforward.conf
sudo sysctl -p /etc/sysctl.d/99-kubernetes-ipforward.conf
sudo sysctl -w net.ipv4.ip_forward=1
sudo sysctl net.ipv4.ip_forward
"""

CONTAINERD_INSTALL = {
    "debian": """\
set -e
if ! command -v containerd >/dev/null 2>&1; then
    sudo apt-get update -y
    sudo apt-get install -y containerd
fi
containerd --version
""",
    "rhel": """\
set -e
if ! command -v containerd >/dev/null 2>&1; then
    if command -v dnf >/dev/null 2>&1; then
        sudo dnf install -y dnf-plugins-core
        sudo dnf config-manager --add-repo https://download.docker.com/linux/centos/docker-ce.repo
        sudo dnf install -y containerd.io
    else
        sudo yum install -y yum-utils
        sudo yum-config-manager --add-repo https://download.docker.com/linux/centos/docker-ce.repo
        sudo yum install -y containerd.io
    fi
fi
containerd --version
""",
}

CONTAINERD_CONFIG = """\
set -e
sudo mkdir -p /etc/containerd
containerd config default | sudo tee /etc/containerd/config.toml >/dev/null
sudo sed -i 's/SystemdCgroup = false/SystemdCgroup = true/' /etc/containerd/config.toml
sudo systemctl daemon-reload
sudo systemctl enable containerd
sudo systemctl restart containerd
for i in $(seq 1 10); do
    [ -S /run/containerd/containerd.sock ] && break
    sleep 1
done
test -S /run/containerd/containerd.sock
"""

REPO_CONFIG = {
    "debian": """\
set -e
sudo apt-get update -y
sudo apt-get install -y apt-transport-https ca-certificates curl gpg
sudo mkdir -p -m 755 /etc/apt/keyrings
curl -fsSL https://pkgs.k8s.io/core:/stable:/v{{minor}}/deb/Release.key \\
    | sudo gpg --dearmor --yes -o /etc/apt/keyrings/kubernetes-apt-keyring.gpg
echo 'deb [signed-by=/etc/apt/keyrings/kubernetes-apt-keyring.gpg] https://pkgs.k8s.io/core:/stable:/v{{minor}}/deb/ /' \\
    | sudo tee /etc/apt/sources.list.d/kubernetes.list
sudo apt-get update -y
""",
    "rhel": """\
set -e
cat <<'EOF' | sudo tee /etc/yum.repos.d/kubernetes.repo
[kubernetes]
name=Kubernetes
baseurl=https://pkgs.k8s.io/core:/stable:/v{{minor}}/rpm/
enabled=1
gpgcheck=1
gpgkey=https://pkgs.k8s.io/core:/stable:/v{{minor}}/rpm/repodata/repomd.xml.key
exclude=kubelet kubeadm kubectl cri-tools kubernetes-cni
EOF
""",
}

K8S_COMPONENTS = {
    "debian": """\
set -e
VERSION=$(apt-cache madison kubeadm | awk '{print $3}' | grep "^{{version}}" | head -1)
sudo apt-get install -y kubelet=${VERSION} kubeadm=${VERSION} kubectl=${VERSION}
sudo apt-mark hold kubelet kubeadm kubectl
sudo systemctl enable --now kubelet
kubeadm version -o short
""",
    "rhel": """\
set -e
if command -v dnf >/dev/null 2>&1; then PM=dnf; else PM=yum; fi
sudo $PM install -y kubelet-{{version}} kubeadm-{{version}} kubectl-{{version}} --disableexcludes=kubernetes
sudo systemctl enable --now kubelet
kubeadm version -o short
""",
}

# Used when kubeadm/kubelet/kubectl were uploaded from the package cache
K8S_COMPONENTS_FROM_UPLOAD = """\
set -e
for bin in kubeadm kubelet kubectl; do
    sudo install -m 0755 /tmp/clusterup-$bin /usr/bin/$bin
    rm -f /tmp/clusterup-$bin
done
sudo mkdir -p /etc/systemd/system/kubelet.service.d
cat <<'EOF' | sudo tee /etc/systemd/system/kubelet.service
[Unit]
Description=kubelet: The Kubernetes Node Agent
After=network-online.target

[Service]
ExecStart=/usr/bin/kubelet
Restart=always
StartLimitInterval=0
RestartSec=10

[Install]
WantedBy=multi-user.target
EOF
cat <<'EOF' | sudo tee /etc/systemd/system/kubelet.service.d/10-kubeadm.conf
[Service]
Environment="KUBELET_KUBECONFIG_ARGS=--bootstrap-kubeconfig=/etc/kubernetes/bootstrap-kubelet.conf --kubeconfig=/etc/kubernetes/kubelet.conf"
Environment="KUBELET_CONFIG_ARGS=--config=/var/lib/kubelet/config.yaml"
EnvironmentFile=-/var/lib/kubelet/kubeadm-flags.env
ExecStart=
ExecStart=/usr/bin/kubelet $KUBELET_KUBECONFIG_ARGS $KUBELET_CONFIG_ARGS $KUBELET_KUBEADM_ARGS
EOF
sudo systemctl daemon-reload
sudo systemctl enable --now kubelet
kubeadm version -o short
"""

K8S_INIT = """\
set -e
sudo kubeadm init --kubernetes-version=v{{version}} --pod-network-cidr={{pod_cidr}} --upload-certs
mkdir -p $HOME/.kube
sudo cp -f /etc/kubernetes/admin.conf $HOME/.kube/config
sudo chown $(id -u):$(id -g) $HOME/.kube/config
kubectl apply -f https://github.com/flannel-io/flannel/releases/latest/download/kube-flannel.yml
"""

K8S_VERIFY = """\
kubectl get nodes -o wide
kubectl get pods -n kube-system -o wide
"""

# Best-effort priming run on a secondary just before it joins
JOIN_PRIME = """\
sudo modprobe overlay
sudo modprobe br_netfilter
sudo sysctl -w net.bridge.bridge-nf-call-iptables=1
sudo sysctl -w net.bridge.bridge-nf-call-ip6tables=1
sudo sysctl -w net.ipv4.ip_forward=1
"""

ScriptTemplate = Union[str, dict[str, str]]

DEFAULT_SCRIPTS: dict[str, ScriptTemplate] = {
    "system_prep": SYSTEM_PREP,
    "ip_forward": IP_FORWARD,
    "containerd_install": CONTAINERD_INSTALL,
    "containerd_config": CONTAINERD_CONFIG,
    "repo_config": REPO_CONFIG,
    "k8s_components": K8S_COMPONENTS,
    "k8s_init": K8S_INIT,
    "k8s_verify": K8S_VERIFY,
}


def distro_family(distro: Optional[str]) -> Optional[str]:
    """Map an os-release ID to "debian", "rhel" or None."""
    value = (distro or "").strip().lower()
    if value in DEBIAN_FAMILY:
        return "debian"
    if value in RHEL_FAMILY:
        return "rhel"
    return None


def default_script(step: str, distro: Optional[str]) -> str:
    """Return the built-in script for a step on a distribution.

    Raises:
        UnsupportedDistribution: If the step is distro-specific and the
            distribution is not in a known family
        KeyError: If the step has no built-in script
    """
    template = DEFAULT_SCRIPTS[step]
    if isinstance(template, str):
        return template

    family = distro_family(distro)
    if family is None or family not in template:
        raise UnsupportedDistribution(distro or "", step=step)
    return template[family]


def render(text: str, **values: str) -> str:
    """Substitute ``{{name}}`` placeholders; unknown placeholders are left as is."""
    for key, value in values.items():
        text = text.replace("{{" + key + "}}", value)
    return text
