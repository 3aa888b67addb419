# Copyright 2025 Multikernel Technologies, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Machine configuration generator.

Generator options are plain callables that mutate a :class:`GenerateOptions`
instance. They are collected while a cluster request is assembled and only
resolved when :meth:`Input.new` is called, so callers can keep appending
options without caring about order dependencies between them.

Example:
    >>> inp = Input.new("demo", "https://10.5.0.2:6443", "1.34.0",
    ...                 with_dns_domain("cluster.local"), with_debug(True))
    >>> cp = inp.config(MachineType.CONTROLPLANE)
"""

import base64
import copy
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import urlparse

from ..exceptions import ConfigError, VersionParseError
from ..models import (
    DEFAULT_CONTROL_PLANE_PORT,
    DEFAULT_INSTALLER_IMAGE,
    DEFAULT_KUBEPRISM_PORT,
    MachineType,
)
from .clientconfig import ClientConfig, Context
from .container import Container
from .contract import VersionContract, contract_or_current
from .secrets import SecretsBundle

KUBELET_IMAGE = "ghcr.io/siderolabs/kubelet"
KUBERNETES_IMAGE_REPOSITORY = "registry.k8s.io"

DEFAULT_POD_SUBNETS = ["10.244.0.0/16"]
DEFAULT_SERVICE_SUBNETS = ["10.96.0.0/12"]
DEFAULT_INSTALL_DISK = "/dev/sda"

InterfaceSelector = Union[str, Dict[str, Any]]

_KUBERNETES_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)(-[0-9A-Za-z.-]+)?(\+[0-9A-Za-z.-]+)?$")


@dataclass
class NetworkConfigOptions:
    """Options for the ``machine.network`` section."""
    interfaces: List[Dict[str, Any]] = field(default_factory=list)
    nameservers: List[str] = field(default_factory=list)
    kubespan: bool = False

    def interface(self, selector: InterfaceSelector) -> Dict[str, Any]:
        """Find or create the interface entry matching selector."""
        key = interface_key(selector)
        for iface in self.interfaces:
            if {k: iface.get(k) for k in key} == key:
                return iface
        iface = copy.deepcopy(key)
        self.interfaces.append(iface)
        return iface


NetworkOption = Callable[[NetworkConfigOptions], None]


@dataclass
class GenerateOptions:
    """Resolved generator options."""
    endpoint_list: List[str] = field(default_factory=list)
    install_disk: str = DEFAULT_INSTALL_DISK
    install_image: str = DEFAULT_INSTALLER_IMAGE
    install_extra_kernel_args: List[str] = field(default_factory=list)
    additional_subject_alt_names: List[str] = field(default_factory=list)
    dns_domain: str = "cluster.local"
    debug: bool = False
    persist: bool = True
    discovery_enabled: Optional[bool] = None
    registry_mirrors: Dict[str, List[str]] = field(default_factory=dict)
    registry_insecure_skip_verify: List[str] = field(default_factory=list)
    version_contract: Optional[VersionContract] = None
    cni_config: Optional[Dict[str, Any]] = None
    kubeprism_port: int = DEFAULT_KUBEPRISM_PORT
    local_api_server_port: int = DEFAULT_CONTROL_PLANE_PORT
    network_config_options: List[NetworkOption] = field(default_factory=list)
    sysctls: Dict[str, str] = field(default_factory=dict)
    system_disk_encryption: Optional[Dict[str, Any]] = None
    allow_scheduling_on_control_planes: Optional[bool] = None
    secrets_bundle: Optional[SecretsBundle] = None


GenOption = Callable[[GenerateOptions], None]


def interface_key(selector: InterfaceSelector) -> Dict[str, Any]:
    """Identity of an interface: a name or a device selector."""
    if isinstance(selector, str):
        return {"interface": selector}
    return {"deviceSelector": dict(selector)}


def with_endpoint_list(endpoints: List[str]) -> GenOption:
    def opt(o: GenerateOptions) -> None:
        o.endpoint_list = list(endpoints)
    return opt


def with_install_disk(disk: str) -> GenOption:
    def opt(o: GenerateOptions) -> None:
        o.install_disk = disk
    return opt


def with_install_image(image: str) -> GenOption:
    def opt(o: GenerateOptions) -> None:
        o.install_image = image
    return opt


def with_install_extra_kernel_args(args: List[str]) -> GenOption:
    def opt(o: GenerateOptions) -> None:
        o.install_extra_kernel_args.extend(args)
    return opt


def with_additional_subject_alt_names(sans: List[str]) -> GenOption:
    def opt(o: GenerateOptions) -> None:
        for san in sans:
            if san not in o.additional_subject_alt_names:
                o.additional_subject_alt_names.append(san)
    return opt


def with_dns_domain(domain: str) -> GenOption:
    def opt(o: GenerateOptions) -> None:
        o.dns_domain = domain
    return opt


def with_debug(enabled: bool) -> GenOption:
    def opt(o: GenerateOptions) -> None:
        o.debug = enabled
    return opt


def with_persist(enabled: bool) -> GenOption:
    def opt(o: GenerateOptions) -> None:
        o.persist = enabled
    return opt


def with_cluster_discovery(enabled: bool) -> GenOption:
    def opt(o: GenerateOptions) -> None:
        o.discovery_enabled = enabled
    return opt


def with_registry_mirror(host: str, *endpoints: str) -> GenOption:
    def opt(o: GenerateOptions) -> None:
        o.registry_mirrors.setdefault(host, []).extend(endpoints)
    return opt


def with_registry_insecure_skip_verify(*hosts: str) -> GenOption:
    def opt(o: GenerateOptions) -> None:
        for host in hosts:
            if host not in o.registry_insecure_skip_verify:
                o.registry_insecure_skip_verify.append(host)
    return opt


def with_version_contract(contract: Optional[VersionContract]) -> GenOption:
    def opt(o: GenerateOptions) -> None:
        o.version_contract = contract
    return opt


def with_cluster_cni_config(cni: Dict[str, Any]) -> GenOption:
    def opt(o: GenerateOptions) -> None:
        o.cni_config = copy.deepcopy(cni)
    return opt


def with_kubeprism_port(port: int) -> GenOption:
    def opt(o: GenerateOptions) -> None:
        o.kubeprism_port = port
    return opt


def with_local_api_server_port(port: int) -> GenOption:
    def opt(o: GenerateOptions) -> None:
        o.local_api_server_port = port
    return opt


def with_network_options(*opts: NetworkOption) -> GenOption:
    def opt(o: GenerateOptions) -> None:
        o.network_config_options.extend(opts)
    return opt


def with_sysctls(sysctls: Dict[str, str]) -> GenOption:
    def opt(o: GenerateOptions) -> None:
        o.sysctls.update(sysctls)
    return opt


def with_system_disk_encryption(cfg: Dict[str, Any]) -> GenOption:
    def opt(o: GenerateOptions) -> None:
        o.system_disk_encryption = copy.deepcopy(cfg)
    return opt


def with_allow_scheduling_on_control_planes(enabled: bool) -> GenOption:
    def opt(o: GenerateOptions) -> None:
        o.allow_scheduling_on_control_planes = enabled
    return opt


def with_secrets_bundle(bundle: SecretsBundle) -> GenOption:
    def opt(o: GenerateOptions) -> None:
        o.secrets_bundle = bundle
    return opt


# network options

def with_network_interface_dhcp(selector: InterfaceSelector, enabled: bool = True) -> NetworkOption:
    def opt(n: NetworkConfigOptions) -> None:
        n.interface(selector)["dhcp"] = enabled
    return opt


def with_network_interface_dhcpv4(selector: InterfaceSelector, enabled: bool) -> NetworkOption:
    def opt(n: NetworkConfigOptions) -> None:
        n.interface(selector).setdefault("dhcpOptions", {})["ipv4"] = enabled
    return opt


def with_network_interface_dhcpv6(selector: InterfaceSelector, enabled: bool) -> NetworkOption:
    def opt(n: NetworkConfigOptions) -> None:
        n.interface(selector).setdefault("dhcpOptions", {})["ipv6"] = enabled
    return opt


def with_network_interface_ignore(selector: InterfaceSelector) -> NetworkOption:
    def opt(n: NetworkConfigOptions) -> None:
        n.interface(selector)["ignore"] = True
    return opt


def with_network_interface_virtual_ip(selector: InterfaceSelector, vip: str) -> NetworkOption:
    def opt(n: NetworkConfigOptions) -> None:
        n.interface(selector)["vip"] = {"ip": vip}
    return opt


def with_network_nameservers(*nameservers: str) -> NetworkOption:
    def opt(n: NetworkConfigOptions) -> None:
        n.nameservers.extend(nameservers)
    return opt


def with_kubespan() -> NetworkOption:
    def opt(n: NetworkConfigOptions) -> None:
        n.kubespan = True
    return opt


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode()


def _image(name: str, version: str) -> str:
    return f"{KUBERNETES_IMAGE_REPOSITORY}/{name}:v{version}"


def parse_kubernetes_version(version: str) -> str:
    """
    Validate a Kubernetes version and return it without the leading ``v``.

    Raises:
        VersionParseError: If the string is not a semantic version
    """
    if not _KUBERNETES_VERSION_RE.match(version.strip()):
        raise VersionParseError(f"error parsing Kubernetes version {version!r}")
    return version.strip().lstrip("v")


class Input:
    """Everything needed to render the machine configs of one cluster."""

    def __init__(self, cluster_name: str, endpoint: str, kubernetes_version: str,
                 options: GenerateOptions, secrets: SecretsBundle):
        self.cluster_name = cluster_name
        self.endpoint = endpoint
        self.kubernetes_version = kubernetes_version.lstrip("v")
        self.options = options
        self.secrets = secrets

    @classmethod
    def new(cls, cluster_name: str, endpoint: str, kubernetes_version: str,
            *opts: GenOption) -> "Input":
        """
        Resolve generator options into an input.

        Args:
            cluster_name: Cluster name
            endpoint: Control plane endpoint URL
            kubernetes_version: Kubernetes version, with or without ``v``
            *opts: Generator options, applied in order

        Returns:
            The resolved input, with freshly generated secrets unless a
            bundle was supplied

        Raises:
            ConfigError: If the endpoint is not a URL
            VersionParseError: If the Kubernetes version does not parse
        """
        kubernetes_version = parse_kubernetes_version(kubernetes_version)

        options = GenerateOptions()
        for opt in opts:
            opt(options)

        parsed = urlparse(endpoint)
        if not parsed.scheme or not parsed.hostname:
            raise ConfigError(f"invalid control plane endpoint {endpoint!r}")

        secrets = options.secrets_bundle or SecretsBundle.generate(options.version_contract)

        return cls(cluster_name, endpoint, kubernetes_version, options, secrets)

    @property
    def contract(self) -> VersionContract:
        return contract_or_current(self.options.version_contract)

    def _network(self) -> Dict[str, Any]:
        net = NetworkConfigOptions()
        for opt in self.options.network_config_options:
            opt(net)

        result: Dict[str, Any] = {}
        if net.interfaces:
            result["interfaces"] = net.interfaces
        if net.nameservers:
            result["nameservers"] = net.nameservers
        if net.kubespan:
            result["kubespan"] = {"enabled": True}
        return result

    def _features(self, machine_type: MachineType) -> Dict[str, Any]:
        contract = self.contract
        features: Dict[str, Any] = {"rbac": True}

        if contract.stable_hostname_enabled():
            features["stableHostname"] = True
        if contract.apid_ext_key_usage_check_enabled():
            features["apidCheckExtKeyUsage"] = True
        if contract.disk_quota_support_enabled():
            features["diskQuotaSupport"] = True
        if contract.kubeprism_enabled():
            features["kubePrism"] = {"enabled": True, "port": self.options.kubeprism_port}
        if contract.host_dns_enabled():
            host_dns: Dict[str, Any] = {"enabled": True}
            if contract.host_dns_forward_kube_dns_to_host():
                host_dns["forwardKubeDNSToHost"] = True
            features["hostDNS"] = host_dns

        return features

    def _registries(self) -> Dict[str, Any]:
        registries: Dict[str, Any] = {}
        if self.options.registry_mirrors:
            registries["mirrors"] = {
                host: {"endpoints": list(endpoints)}
                for host, endpoints in self.options.registry_mirrors.items()
            }
        if self.options.registry_insecure_skip_verify:
            registries["config"] = {
                host: {"tls": {"insecureSkipVerify": True}}
                for host in self.options.registry_insecure_skip_verify
            }
        return registries

    def _machine(self, machine_type: MachineType) -> Dict[str, Any]:
        opts = self.options
        secrets = self.secrets
        contract = self.contract
        control_plane = machine_type.is_control_plane

        kubelet: Dict[str, Any] = {"image": f"{KUBELET_IMAGE}:v{self.kubernetes_version}"}
        if contract.kubelet_default_runtime_seccomp_profile_enabled():
            kubelet["defaultRuntimeSeccompProfileEnabled"] = True
        if contract.kubelet_manifests_directory_disabled():
            kubelet["disableManifestsDirectory"] = True

        install: Dict[str, Any] = {"disk": opts.install_disk, "image": opts.install_image, "wipe": False}
        if opts.install_extra_kernel_args:
            install["extraKernelArgs"] = list(opts.install_extra_kernel_args)

        machine: Dict[str, Any] = {
            "type": machine_type.value,
            "token": secrets.trustd_token,
            "ca": secrets.os_ca.to_dict() if control_plane else secrets.os_ca.crt_only(),
            "certSANs": list(opts.additional_subject_alt_names),
            "kubelet": kubelet,
            "network": self._network(),
            "install": install,
        }

        registries = self._registries()
        if registries:
            machine["registries"] = registries

        machine["features"] = self._features(machine_type)

        if control_plane and contract.add_exclude_from_external_load_balancer():
            machine["nodeLabels"] = {"node.kubernetes.io/exclude-from-external-load-balancers": ""}

        if opts.sysctls:
            machine["sysctls"] = dict(opts.sysctls)

        if opts.system_disk_encryption:
            machine["systemDiskEncryption"] = copy.deepcopy(opts.system_disk_encryption)

        return machine

    def _discovery(self) -> Dict[str, Any]:
        enabled = self.options.discovery_enabled
        if enabled is None:
            enabled = True
        return {
            "enabled": enabled,
            "registries": {
                "kubernetes": {"disabled": self.contract.kubernetes_discovery_backend_disabled()},
                "service": {},
            },
        }

    def _cluster(self, machine_type: MachineType) -> Dict[str, Any]:
        opts = self.options
        secrets = self.secrets
        contract = self.contract

        control_plane_section: Dict[str, Any] = {"endpoint": self.endpoint}
        if opts.local_api_server_port != DEFAULT_CONTROL_PLANE_PORT:
            control_plane_section["localAPIServerPort"] = opts.local_api_server_port

        network: Dict[str, Any] = {
            "dnsDomain": opts.dns_domain,
            "podSubnets": list(DEFAULT_POD_SUBNETS),
            "serviceSubnets": list(DEFAULT_SERVICE_SUBNETS),
        }
        if opts.cni_config:
            network["cni"] = copy.deepcopy(opts.cni_config)

        cluster: Dict[str, Any] = {
            "id": secrets.cluster_id,
            "secret": secrets.cluster_secret,
            "controlPlane": control_plane_section,
        }

        if machine_type.is_control_plane or contract.cluster_name_for_workers():
            cluster["clusterName"] = self.cluster_name

        cluster["network"] = network
        cluster["token"] = secrets.bootstrap_token

        if not machine_type.is_control_plane:
            cluster["ca"] = secrets.k8s_ca.crt_only()
            cluster["discovery"] = self._discovery()
            return cluster

        if secrets.secretbox_encryption_secret:
            cluster["secretboxEncryptionSecret"] = secrets.secretbox_encryption_secret

        sans = list(opts.additional_subject_alt_names)
        host = urlparse(self.endpoint).hostname
        if host and host not in sans:
            sans.insert(0, host)

        api_server: Dict[str, Any] = {
            "image": _image("kube-apiserver", self.kubernetes_version),
            "certSANs": sans,
        }
        if contract.pod_security_admission_enabled():
            api_server["admissionControl"] = [{
                "name": "PodSecurity",
                "configuration": {
                    "apiVersion": "pod-security.admission.config.k8s.io/v1alpha1",
                    "kind": "PodSecurityConfiguration",
                    "defaults": {
                        "enforce": "baseline", "enforce-version": "latest",
                        "audit": "restricted", "audit-version": "latest",
                        "warn": "restricted", "warn-version": "latest",
                    },
                    "exemptions": {"namespaces": ["kube-system"], "runtimeClasses": [], "usernames": []},
                },
            }]
        if contract.api_server_audit_policy_supported():
            api_server["auditPolicy"] = {
                "apiVersion": "audit.k8s.io/v1",
                "kind": "Policy",
                "rules": [{"level": "Metadata"}],
            }

        cluster.update({
            "ca": secrets.k8s_ca.to_dict(),
            "aggregatorCA": secrets.k8s_aggregator_ca.to_dict(),
            "serviceAccount": {"key": _b64(secrets.k8s_service_account_key)},
            "apiServer": api_server,
            "controllerManager": {"image": _image("kube-controller-manager", self.kubernetes_version)},
            "proxy": {"image": _image("kube-proxy", self.kubernetes_version)},
            "scheduler": {"image": _image("kube-scheduler", self.kubernetes_version)},
            "discovery": self._discovery(),
            "etcd": {"ca": secrets.etcd_ca.to_dict()},
        })

        allow = opts.allow_scheduling_on_control_planes
        if allow is None and contract.kubernetes_allow_scheduling_on_control_planes():
            allow = False
        if allow is not None:
            cluster["allowSchedulingOnControlPlanes"] = allow

        return cluster

    def config(self, machine_type: MachineType) -> Container:
        """Render the machine config of one role."""
        doc = {
            "version": "v1alpha1",
            "debug": self.options.debug,
            "persist": self.options.persist,
            "machine": self._machine(machine_type),
            "cluster": self._cluster(machine_type),
        }
        return Container([doc])

    def talosconfig(self) -> ClientConfig:
        """Client config with admin credentials for this cluster."""
        endpoints = list(self.options.endpoint_list) or ["127.0.0.1"]
        context = Context(
            endpoints=endpoints,
            ca=_b64(self.secrets.os_ca.crt),
            crt=_b64(self.secrets.admin.crt),
            key=_b64(self.secrets.admin.key),
        )
        return ClientConfig(context=self.cluster_name, contexts={self.cluster_name: context})


def generate_config(machine_type: MachineType, inp: Input) -> Container:
    return inp.config(machine_type)
