#!/usr/bin/env python3
"""
Azure VM Renamer

Azure cannot rename a virtual machine in place. This script captures the VM
configuration, deletes the VM object while keeping its disks and network
interfaces, then recreates an identical VM under the new name.
Features:
- Snapshot of the VM configuration saved before anything is deleted
- Refuses to run when a disk or NIC would be deleted together with the VM
- Managed and unmanaged (VHD) disks, Windows and Linux, Trusted Launch and Confidential VMs
- Dry-run check and restore from a saved snapshot

Requirements:
- Azure CLI installed and authenticated (or service principal in .env.secret)
- Python packages: azure-identity, azure-mgmt-compute, azure-mgmt-resource,
  azure-mgmt-network, azure-mgmt-storage, azure-storage-blob
"""

import json
import os
import re
import sys
import time
import logging
import argparse
import subprocess
import yaml
from datetime import datetime
from typing import Dict, List, Optional
from dataclasses import dataclass, asdict, field
from dotenv import load_dotenv

# Azure SDK imports
try:
    from azure.core.exceptions import ResourceNotFoundError
    from azure.identity import DefaultAzureCredential
    from azure.mgmt.core.tools import parse_resource_id
    from azure.mgmt.compute import ComputeManagementClient
    from azure.mgmt.resource import ResourceManagementClient
    from azure.mgmt.network import NetworkManagementClient
    from azure.mgmt.storage import StorageManagementClient
    from azure.storage.blob import BlobClient
    from azure.mgmt.compute.models import (
        VirtualMachine, HardwareProfile, StorageProfile, OSDisk, DataDisk,
        NetworkProfile, NetworkInterfaceReference, ManagedDiskParameters,
        VirtualHardDisk, VMDiskSecurityProfile, DiskCreateOptionTypes,
        SecurityProfile, UefiSettings, SubResource, DiagnosticsProfile,
        BootDiagnostics, BillingProfile, Plan, AdditionalCapabilities,
        DiskEncryptionSetParameters
    )
except ImportError as e:
    print(f"Error: Missing required Azure SDK packages ({e}). Install with:")
    print("pip install azure-identity azure-mgmt-compute azure-mgmt-resource azure-mgmt-network azure-mgmt-storage azure-storage-blob python-dotenv pyyaml")
    sys.exit(1)


CONFIG_FILE = 'config.yaml'
SECRET_FILE = '.env.secret'

DELETE_OPTION_DELETE = 'Delete'
SECURE_SECURITY_TYPES = ('TrustedLaunch', 'ConfidentialVM')

# Azure VM resource names: 1-64 chars, no trailing '.' or '-'
VM_NAME_PATTERN = re.compile(r'^[A-Za-z0-9](?:[A-Za-z0-9_.-]{0,62}[A-Za-z0-9_])?$')


def load_secrets() -> Dict[str, str]:
    """Load secrets from .env.secret file into the environment"""
    if os.path.exists(SECRET_FILE):
        # DefaultAzureCredential reads AZURE_CLIENT_ID/SECRET/TENANT_ID from the environment
        load_dotenv(SECRET_FILE)
    return {
        'subscription_id': os.getenv('AZURE_SUBSCRIPTION_ID')
    }


def load_config() -> Dict:
    """Load configuration from config.yaml file"""
    if os.path.exists(CONFIG_FILE):
        with open(CONFIG_FILE, 'r') as f:
            return yaml.safe_load(f) or {}
    else:
        print(f"Warning: {CONFIG_FILE} not found. Using default configuration.")
        return {}


def _enum_value(value):
    """SDK enums are str subclasses; keep the plain wire value"""
    return getattr(value, 'value', value)


def _same_option(value, expected: str) -> bool:
    return value is not None and str(_enum_value(value)).lower() == expected.lower()


@dataclass
class RenameConfig:
    """Rename configuration parameters"""
    subscription_id: str = None
    resource_group: str = None
    var_dir: str = None
    check_vhd_blobs: bool = None
    wait_for_disk_release: bool = None
    disk_release_timeout: int = None
    log_level: str = None

    def __post_init__(self):
        # Load configuration from files
        config_data = load_config()
        secrets_data = load_secrets()

        # Apply configuration values with fallbacks
        self.subscription_id = (self.subscription_id or secrets_data['subscription_id']
                                or config_data.get('subscription_id'))
        self.resource_group = self.resource_group or config_data.get('resource_group')
        self.var_dir = self.var_dir or config_data.get('var_dir', 'var')
        self.check_vhd_blobs = self.check_vhd_blobs if self.check_vhd_blobs is not None else config_data.get('check_vhd_blobs', True)
        self.wait_for_disk_release = self.wait_for_disk_release if self.wait_for_disk_release is not None else config_data.get('wait_for_disk_release', True)
        self.disk_release_timeout = self.disk_release_timeout or config_data.get('disk_release_timeout', 300)
        self.log_level = (self.log_level or config_data.get('log_level', 'INFO')).upper()


@dataclass
class DiskSnapshot:
    """OS or data disk attached to the VM"""
    name: str
    caching: Optional[str] = None
    managed_disk_id: Optional[str] = None
    vhd_uri: Optional[str] = None
    storage_account_type: Optional[str] = None
    security_encryption_type: Optional[str] = None
    disk_encryption_set_id: Optional[str] = None
    disk_size_gb: Optional[int] = None
    lun: Optional[int] = None
    write_accelerator_enabled: Optional[bool] = None
    delete_option: Optional[str] = None

    @property
    def is_managed(self) -> bool:
        return self.managed_disk_id is not None

    @classmethod
    def from_disk(cls, disk) -> 'DiskSnapshot':
        managed = disk.managed_disk
        security = managed.security_profile if managed else None
        encryption_set = security.disk_encryption_set if security else None
        return cls(
            name=disk.name,
            caching=_enum_value(disk.caching),
            managed_disk_id=managed.id if managed else None,
            vhd_uri=disk.vhd.uri if disk.vhd else None,
            storage_account_type=_enum_value(managed.storage_account_type) if managed else None,
            security_encryption_type=_enum_value(security.security_encryption_type) if security else None,
            disk_encryption_set_id=encryption_set.id if encryption_set else None,
            disk_size_gb=disk.disk_size_gb,
            lun=getattr(disk, 'lun', None),
            write_accelerator_enabled=disk.write_accelerator_enabled,
            delete_option=_enum_value(disk.delete_option)
        )

    def managed_disk_parameters(self) -> ManagedDiskParameters:
        params = ManagedDiskParameters(id=self.managed_disk_id)
        if self.security_encryption_type or self.disk_encryption_set_id:
            params.security_profile = VMDiskSecurityProfile(
                security_encryption_type=self.security_encryption_type
            )
            if self.disk_encryption_set_id:
                params.security_profile.disk_encryption_set = DiskEncryptionSetParameters(
                    id=self.disk_encryption_set_id
                )
        return params


@dataclass
class NicSnapshot:
    """Network interface reference attached to the VM"""
    id: str
    primary: Optional[bool] = None
    delete_option: Optional[str] = None

    @property
    def name(self) -> str:
        return self.id.rstrip('/').split('/')[-1]


@dataclass
class VMSnapshot:
    """Configuration captured from the source VM before it is deleted"""
    vm_name: str
    resource_group: str
    location: str
    vm_size: str
    os_type: str
    os_disk: DiskSnapshot
    network_interfaces: List[NicSnapshot] = field(default_factory=list)
    data_disks: List[DiskSnapshot] = field(default_factory=list)
    tags: Dict[str, str] = field(default_factory=dict)
    zones: List[str] = field(default_factory=list)
    security_type: Optional[str] = None
    secure_boot_enabled: Optional[bool] = None
    v_tpm_enabled: Optional[bool] = None
    encryption_at_host: Optional[bool] = None
    availability_set_id: Optional[str] = None
    proximity_placement_group_id: Optional[str] = None
    license_type: Optional[str] = None
    plan: Optional[Dict[str, str]] = None
    priority: Optional[str] = None
    eviction_policy: Optional[str] = None
    max_price: Optional[float] = None
    boot_diagnostics_enabled: Optional[bool] = None
    boot_diagnostics_storage_uri: Optional[str] = None
    ultra_ssd_enabled: Optional[bool] = None
    vm_id: Optional[str] = None
    captured_at: Optional[str] = None

    @classmethod
    def from_vm(cls, vm: VirtualMachine, resource_group: str) -> 'VMSnapshot':
        """Capture everything needed to rebuild the VM around its existing disks and NICs"""
        storage = vm.storage_profile
        os_disk = storage.os_disk

        nics = []
        if vm.network_profile and vm.network_profile.network_interfaces:
            for nic in vm.network_profile.network_interfaces:
                nics.append(NicSnapshot(
                    id=nic.id,
                    primary=nic.primary,
                    delete_option=_enum_value(nic.delete_option)
                ))

        snapshot = cls(
            vm_name=vm.name,
            resource_group=resource_group,
            location=vm.location,
            vm_size=_enum_value(vm.hardware_profile.vm_size),
            os_type=_enum_value(os_disk.os_type),
            os_disk=DiskSnapshot.from_disk(os_disk),
            network_interfaces=nics,
            data_disks=[DiskSnapshot.from_disk(d) for d in (storage.data_disks or [])],
            tags=dict(vm.tags or {}),
            zones=list(vm.zones or []),
            license_type=vm.license_type,
            priority=_enum_value(vm.priority),
            eviction_policy=_enum_value(vm.eviction_policy),
            vm_id=vm.id,
            captured_at=datetime.now().isoformat()
        )

        security = vm.security_profile
        if security:
            snapshot.security_type = _enum_value(security.security_type)
            snapshot.encryption_at_host = security.encryption_at_host
            if security.uefi_settings:
                snapshot.secure_boot_enabled = security.uefi_settings.secure_boot_enabled
                snapshot.v_tpm_enabled = security.uefi_settings.v_tpm_enabled

        if vm.availability_set:
            snapshot.availability_set_id = vm.availability_set.id
        if vm.proximity_placement_group:
            snapshot.proximity_placement_group_id = vm.proximity_placement_group.id
        if vm.plan:
            snapshot.plan = {
                'name': vm.plan.name,
                'publisher': vm.plan.publisher,
                'product': vm.plan.product,
                'promotion_code': vm.plan.promotion_code
            }
        if vm.billing_profile:
            snapshot.max_price = vm.billing_profile.max_price
        if vm.diagnostics_profile and vm.diagnostics_profile.boot_diagnostics:
            snapshot.boot_diagnostics_enabled = vm.diagnostics_profile.boot_diagnostics.enabled
            snapshot.boot_diagnostics_storage_uri = vm.diagnostics_profile.boot_diagnostics.storage_uri
        if vm.additional_capabilities:
            snapshot.ultra_ssd_enabled = vm.additional_capabilities.ultra_ssd_enabled

        return snapshot

    @classmethod
    def from_dict(cls, data: Dict) -> 'VMSnapshot':
        data = dict(data)
        data['os_disk'] = DiskSnapshot(**data['os_disk'])
        data['network_interfaces'] = [NicSnapshot(**n) for n in data.get('network_interfaces', [])]
        data['data_disks'] = [DiskSnapshot(**d) for d in data.get('data_disks', [])]
        return cls(**data)

    @property
    def all_disks(self) -> List[DiskSnapshot]:
        return [self.os_disk] + self.data_disks


@dataclass
class RenameState:
    """Rename progress tracking"""
    resource_group: str
    old_name: str
    new_name: str
    snapshot_file: str
    started_at: str
    old_vm_deleted: bool = False
    new_vm_created: bool = False
    new_vm_id: Optional[str] = None


def validate_vm_name(name: str) -> bool:
    return bool(name) and VM_NAME_PATTERN.match(name) is not None


def find_destructive_delete_options(snapshot: VMSnapshot) -> List[str]:
    """List the attached resources Azure would delete together with the VM"""
    offenders = []
    if _same_option(snapshot.os_disk.delete_option, DELETE_OPTION_DELETE):
        offenders.append(f"OS disk {snapshot.os_disk.name}")
    for disk in snapshot.data_disks:
        if _same_option(disk.delete_option, DELETE_OPTION_DELETE):
            offenders.append(f"data disk {disk.name} (LUN {disk.lun})")
    for nic in snapshot.network_interfaces:
        if _same_option(nic.delete_option, DELETE_OPTION_DELETE):
            offenders.append(f"network interface {nic.name}")
    return offenders


def build_vm_parameters(snapshot: VMSnapshot) -> VirtualMachine:
    """Build the new VM definition, attaching the snapshot's existing disks and NICs"""
    # OS disk
    os_disk = OSDisk(
        name=snapshot.os_disk.name,
        create_option=DiskCreateOptionTypes.ATTACH,
        os_type=snapshot.os_type,  # Required when attaching existing disk
        caching=snapshot.os_disk.caching,
        write_accelerator_enabled=snapshot.os_disk.write_accelerator_enabled,
        delete_option=snapshot.os_disk.delete_option
    )
    if snapshot.os_disk.is_managed:
        os_disk.managed_disk = snapshot.os_disk.managed_disk_parameters()
    else:
        os_disk.vhd = VirtualHardDisk(uri=snapshot.os_disk.vhd_uri)

    # Network interfaces
    nic_refs = [
        NetworkInterfaceReference(id=nic.id, primary=nic.primary, delete_option=nic.delete_option)
        for nic in snapshot.network_interfaces
    ]
    if len(nic_refs) > 1 and not any(ref.primary for ref in nic_refs):
        nic_refs[0].primary = True

    # Data disks
    data_disks = []
    for disk in snapshot.data_disks:
        data_disk = DataDisk(
            lun=disk.lun,
            name=disk.name,
            create_option=DiskCreateOptionTypes.ATTACH,
            caching=disk.caching,
            disk_size_gb=disk.disk_size_gb,
            write_accelerator_enabled=disk.write_accelerator_enabled,
            delete_option=disk.delete_option
        )
        if disk.is_managed:
            data_disk.managed_disk = disk.managed_disk_parameters()
        else:
            data_disk.vhd = VirtualHardDisk(uri=disk.vhd_uri)
        data_disks.append(data_disk)

    vm_params = VirtualMachine(
        location=snapshot.location,
        hardware_profile=HardwareProfile(vm_size=snapshot.vm_size),
        storage_profile=StorageProfile(os_disk=os_disk, data_disks=data_disks),
        network_profile=NetworkProfile(network_interfaces=nic_refs),
        tags=dict(snapshot.tags)
    )

    # Security profile
    if snapshot.security_type in SECURE_SECURITY_TYPES:
        vm_params.security_profile = SecurityProfile(
            security_type=snapshot.security_type,
            uefi_settings=UefiSettings(
                secure_boot_enabled=snapshot.secure_boot_enabled,
                v_tpm_enabled=snapshot.v_tpm_enabled
            ),
            encryption_at_host=snapshot.encryption_at_host
        )
    elif snapshot.encryption_at_host:
        vm_params.security_profile = SecurityProfile(encryption_at_host=True)

    # Placement
    if snapshot.zones:
        vm_params.zones = list(snapshot.zones)
    if snapshot.availability_set_id:
        vm_params.availability_set = SubResource(id=snapshot.availability_set_id)
    if snapshot.proximity_placement_group_id:
        vm_params.proximity_placement_group = SubResource(id=snapshot.proximity_placement_group_id)

    # Licensing and billing
    if snapshot.license_type:
        vm_params.license_type = snapshot.license_type
    if snapshot.plan:
        vm_params.plan = Plan(**snapshot.plan)
    if snapshot.priority:
        vm_params.priority = snapshot.priority
    if snapshot.eviction_policy:
        vm_params.eviction_policy = snapshot.eviction_policy
    if snapshot.max_price is not None:
        vm_params.billing_profile = BillingProfile(max_price=snapshot.max_price)

    if snapshot.boot_diagnostics_enabled is not None:
        vm_params.diagnostics_profile = DiagnosticsProfile(
            boot_diagnostics=BootDiagnostics(
                enabled=snapshot.boot_diagnostics_enabled,
                storage_uri=snapshot.boot_diagnostics_storage_uri
            )
        )
    if snapshot.ultra_ssd_enabled is not None:
        vm_params.additional_capabilities = AdditionalCapabilities(
            ultra_ssd_enabled=snapshot.ultra_ssd_enabled
        )

    return vm_params


class AzureVMRenamer:
    """Rename Azure VMs by recreating them around their existing disks and NICs"""

    def __init__(self, subscription_id: str, config: RenameConfig):
        self.subscription_id = subscription_id
        self.config = config
        self.credential = DefaultAzureCredential()

        # Initialize Azure clients
        self.compute_client = ComputeManagementClient(
            self.credential, subscription_id
        )
        self.resource_client = ResourceManagementClient(
            self.credential, subscription_id
        )
        self.network_client = NetworkManagementClient(
            self.credential, subscription_id
        )
        self.storage_client = StorageManagementClient(
            self.credential, subscription_id
        )

        self.state_dir = os.path.join(config.var_dir, 'state')
        self.backup_dir = os.path.join(config.var_dir, 'backups')
        self.log_dir = os.path.join(config.var_dir, 'logs')
        self._ensure_var_directories()

        self._setup_logging()

    def _ensure_var_directories(self):
        """Create var directories if they don't exist"""
        for var_dir in (self.state_dir, self.backup_dir, self.log_dir):
            os.makedirs(var_dir, exist_ok=True)

    def _setup_logging(self):
        """Setup logging configuration"""
        logging.basicConfig(
            level=getattr(logging, self.config.log_level, logging.INFO),
            format='%(asctime)s - %(levelname)s - %(message)s',
            handlers=[
                logging.FileHandler(os.path.join(self.log_dir, 'azure_vm_renamer.log')),
                logging.StreamHandler(sys.stdout)
            ]
        )

        # Reduce Azure SDK logging verbosity
        logging.getLogger('azure').setLevel(logging.WARNING)
        logging.getLogger('azure.core.pipeline.policies.http_logging_policy').setLevel(logging.WARNING)
        logging.getLogger('azure.mgmt').setLevel(logging.WARNING)
        logging.getLogger('azure.identity').setLevel(logging.WARNING)
        logging.getLogger('urllib3').setLevel(logging.WARNING)

        self.logger = logging.getLogger(__name__)

    def _format_duration(self, seconds: float) -> str:
        """Format duration in a human-readable way"""
        if seconds < 60:
            return f"{seconds:.1f} seconds"
        elif seconds < 3600:
            minutes = seconds / 60
            return f"{minutes:.1f} minutes ({seconds:.1f} seconds)"
        else:
            hours = seconds / 3600
            minutes = (seconds % 3600) / 60
            return f"{hours:.1f} hours, {minutes:.1f} minutes ({seconds:.1f} seconds)"

    def _log_operation_start(self, operation: str) -> float:
        """Log operation start and return start time"""
        start_time = time.time()
        self.logger.info(f"🚀 Starting {operation} at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        return start_time

    def _log_operation_end(self, operation: str, start_time: float):
        """Log operation completion with duration"""
        duration = time.time() - start_time
        self.logger.info(f"✅ {operation} completed in {self._format_duration(duration)}")

    def snapshot_path(self, vm_name: str) -> str:
        return os.path.join(self.state_dir, f"{vm_name}_snapshot.json")

    def state_path(self, vm_name: str) -> str:
        return os.path.join(self.state_dir, f"{vm_name}_state.json")

    def save_snapshot(self, snapshot: VMSnapshot) -> str:
        """Save the configuration snapshot; this must succeed before anything is deleted"""
        path = self.snapshot_path(snapshot.vm_name)
        with open(path, 'w') as f:
            json.dump(asdict(snapshot), f, indent=2)
        self.logger.info(f"💾 Configuration snapshot saved to {path}")
        return path

    def load_snapshot(self, path: str) -> VMSnapshot:
        """Load a configuration snapshot from file"""
        try:
            with open(path, 'r') as f:
                return VMSnapshot.from_dict(json.load(f))
        except FileNotFoundError:
            raise ValueError(f"Snapshot file {path} not found")
        except (json.JSONDecodeError, TypeError, KeyError) as e:
            raise ValueError(f"Snapshot file {path} is not a valid VM snapshot: {e}")

    def export_vm(self, vm: VirtualMachine) -> str:
        """Export the full VM definition as returned by Azure, for manual recovery"""
        timestamp = datetime.now().strftime('%Y%m%d-%H%M%S')
        path = os.path.join(self.backup_dir, f"{vm.name}_{timestamp}.json")
        with open(path, 'w') as f:
            json.dump(vm.as_dict(), f, indent=2, default=str)
        self.logger.info(f"💾 Full VM definition exported to {path}")
        return path

    def _load_state(self, vm_name: str) -> Optional[RenameState]:
        """Load rename state from file"""
        path = self.state_path(vm_name)
        if os.path.exists(path):
            try:
                with open(path, 'r') as f:
                    return RenameState(**json.load(f))
            except (json.JSONDecodeError, TypeError) as e:
                self.logger.warning(f"Could not load state file: {e}")
        return None

    def _save_state(self, state: RenameState):
        """Save rename state to file"""
        try:
            with open(self.state_path(state.old_name), 'w') as f:
                json.dump(asdict(state), f, indent=2)
        except OSError as e:
            self.logger.error(f"Could not save state: {e}")

    def get_vm(self, resource_group: str, vm_name: str) -> Optional[VirtualMachine]:
        """Return the VM or None when it does not exist"""
        try:
            return self.compute_client.virtual_machines.get(resource_group, vm_name)
        except ResourceNotFoundError:
            return None

    def _validate_names(self, old_name: str, new_name: str):
        if not validate_vm_name(new_name):
            raise ValueError(f"'{new_name}' is not a valid VM name (1-64 letters, digits, '_', '.', '-'; "
                             f"must start with a letter or digit and not end with '.' or '-')")
        if old_name == new_name:
            raise ValueError("New VM name must differ from the current name")

    def _validate_resource_group(self, resource_group: str):
        try:
            self.resource_client.resource_groups.get(resource_group)
        except ResourceNotFoundError:
            raise ValueError(f"Resource group {resource_group} not found")

    def _validate_name_available(self, resource_group: str, vm_name: str):
        if self.get_vm(resource_group, vm_name) is not None:
            raise ValueError(f"VM {vm_name} already exists in resource group {resource_group}")

    def validate_delete_options(self, snapshot: VMSnapshot):
        """Abort when deleting the VM would also delete any of its disks or NICs"""
        offenders = find_destructive_delete_options(snapshot)
        if offenders:
            for offender in offenders:
                self.logger.warning(f"⚠️  {offender} has delete option '{DELETE_OPTION_DELETE}' and would be "
                                    f"deleted together with VM {snapshot.vm_name}")
            self.logger.info("💡 Set the delete option of these resources to 'Detach' and run again")
            raise ValueError(f"VM {snapshot.vm_name} has resources set to be deleted with the VM: "
                             f"{', '.join(offenders)}")
        self.logger.info("✅ No attached resource is set to be deleted with the VM")

    def _find_storage_account(self, account_name: str):
        for account in self.storage_client.storage_accounts.list():
            if account.name == account_name:
                return account
        return None

    def _vhd_exists(self, vhd_uri: str) -> bool:
        """Check that an unmanaged disk blob exists, using the storage account key"""
        storage_name = vhd_uri.split('.blob.core.windows.net')[0].split('https://')[-1]
        account = self._find_storage_account(storage_name)
        if account is None:
            self.logger.warning(f"⚠️  Storage account {storage_name} not found in subscription")
            return False

        account_rg = parse_resource_id(account.id)['resource_group']
        keys = self.storage_client.storage_accounts.list_keys(account_rg, storage_name)
        storage_key = keys.keys[0].value

        blob_client = BlobClient.from_blob_url(vhd_uri, credential=storage_key)
        return blob_client.exists()

    def verify_attached_resources(self, snapshot: VMSnapshot):
        """Make sure every disk and NIC to reattach still exists"""
        missing = []

        for disk in snapshot.all_disks:
            if disk.is_managed:
                disk_ref = parse_resource_id(disk.managed_disk_id)
                try:
                    self.compute_client.disks.get(disk_ref['resource_group'], disk_ref['name'])
                    self.logger.info(f"💾 Managed disk found: {disk.name}")
                except ResourceNotFoundError:
                    missing.append(f"managed disk {disk.name}")
            elif self.config.check_vhd_blobs:
                if self._vhd_exists(disk.vhd_uri):
                    self.logger.info(f"💾 VHD blob found: {disk.vhd_uri}")
                else:
                    missing.append(f"VHD blob {disk.vhd_uri}")

        for nic in snapshot.network_interfaces:
            nic_ref = parse_resource_id(nic.id)
            try:
                self.network_client.network_interfaces.get(nic_ref['resource_group'], nic_ref['name'])
                self.logger.info(f"📡 Network interface found: {nic.name}")
            except ResourceNotFoundError:
                missing.append(f"network interface {nic.name}")

        if missing:
            for resource in missing:
                self.logger.warning(f"⚠️  {resource} not found")
            raise ValueError(f"Attached resources of VM {snapshot.vm_name} not found: {', '.join(missing)}")

    def _log_snapshot_summary(self, snapshot: VMSnapshot):
        if snapshot.os_disk.is_managed:
            disk_kind = f"managed {snapshot.os_disk.storage_account_type or ''}".rstrip()
        else:
            disk_kind = "unmanaged"
        self.logger.info(f"🖥️  VM: {snapshot.vm_name} ({snapshot.vm_size}, {snapshot.location})")
        self.logger.info(f"🆔 Source VM id: {snapshot.vm_id}")
        self.logger.info(f"💾 OS disk: {snapshot.os_disk.name} ({snapshot.os_type}, {disk_kind}, "
                         f"caching {snapshot.os_disk.caching})")
        for disk in snapshot.data_disks:
            self.logger.info(f"💾 Data disk: {disk.name} (LUN {disk.lun}, {disk.disk_size_gb} GB, "
                             f"caching {disk.caching})")
        for nic in snapshot.network_interfaces:
            primary = " (primary)" if nic.primary else ""
            self.logger.info(f"📡 Network interface: {nic.name}{primary}")
        if snapshot.security_type:
            self.logger.info(f"🔒 Security type: {snapshot.security_type} (secure boot: "
                             f"{snapshot.secure_boot_enabled}, vTPM: {snapshot.v_tpm_enabled})")

    def check_vm(self, resource_group: str, old_name: str, new_name: str) -> VMSnapshot:
        """Capture and validate everything the rename needs without deleting anything"""
        self.logger.info("🔍 Validating rename...")
        self._validate_names(old_name, new_name)
        self._validate_resource_group(resource_group)

        vm = self.get_vm(resource_group, old_name)
        if vm is None:
            raise ValueError(f"VM {old_name} not found in resource group {resource_group}")
        self._validate_name_available(resource_group, new_name)

        self.export_vm(vm)
        snapshot = VMSnapshot.from_vm(vm, resource_group)
        self.save_snapshot(snapshot)
        self._log_snapshot_summary(snapshot)

        self.validate_delete_options(snapshot)
        self.verify_attached_resources(snapshot)

        self.logger.info(f"✅ VM {old_name} can be renamed to {new_name}")
        return snapshot

    def wait_for_disks_released(self, snapshot: VMSnapshot, timeout: int = 300,
                                check_interval: int = 5) -> bool:
        """
        Poll managed disks until Azure no longer reports them attached to the deleted VM.

        Args:
            snapshot: Snapshot of the deleted VM
            timeout: Maximum time to wait in seconds (default: 5 minutes)
            check_interval: How often to check in seconds (default: 5 seconds)

        Returns:
            True when all disks are released, False if timeout reached
        """
        pending = [d for d in snapshot.all_disks if d.is_managed]
        start_time = time.time()
        attempts = 0

        self.logger.info("🔄 Waiting for disks to be released...")

        while pending:
            attempts += 1
            still_attached = []
            for disk in pending:
                disk_ref = parse_resource_id(disk.managed_disk_id)
                managed_disk = self.compute_client.disks.get(disk_ref['resource_group'], disk_ref['name'])
                if managed_disk.managed_by:
                    still_attached.append(disk)
            pending = still_attached

            if not pending:
                break

            elapsed = time.time() - start_time
            if elapsed >= timeout:
                self.logger.warning(f"⏰ Timeout reached after {elapsed:.1f} seconds. Still attached: "
                                    f"{', '.join(d.name for d in pending)}")
                return False

            self.logger.info(f"⏳ {len(pending)} disk(s) still attached... ({elapsed:.0f}s elapsed, attempt {attempts})")
            time.sleep(check_interval)

        self.logger.info("✅ All disks released")
        return True

    def create_vm_from_snapshot(self, snapshot: VMSnapshot, vm_name: str) -> VirtualMachine:
        """Create a VM from the snapshot, attaching the existing disks and NICs"""
        vm_params = build_vm_parameters(snapshot)

        self.logger.info(f"🖥️ Submitting creation request for VM '{vm_name}'...")
        vm_operation = self.compute_client.virtual_machines.begin_create_or_update(
            snapshot.resource_group, vm_name, vm_params
        )
        self.logger.info("⏳ Waiting for VM provisioning to complete...")
        return vm_operation.result()

    def rename_vm(self, resource_group: str, old_name: str, new_name: str) -> VirtualMachine:
        """Rename a VM: snapshot, validate, delete, recreate under the new name"""
        overall_start = self._log_operation_start(f"rename of VM '{old_name}' to '{new_name}'")

        # Nothing is deleted until every check has passed
        snapshot = self.check_vm(resource_group, old_name, new_name)

        state = RenameState(
            resource_group=resource_group,
            old_name=old_name,
            new_name=new_name,
            snapshot_file=self.snapshot_path(old_name),
            started_at=datetime.now().isoformat()
        )
        self._save_state(state)

        delete_start = self._log_operation_start(f"VM '{old_name}' deletion (preserving disks and NICs)")
        self.logger.info("🗑️ Submitting VM deletion request...")
        vm_operation = self.compute_client.virtual_machines.begin_delete(resource_group, old_name)
        vm_operation.result()
        state.old_vm_deleted = True
        self._save_state(state)
        self._log_operation_end(f"VM '{old_name}' deletion", delete_start)

        try:
            if self.config.wait_for_disk_release:
                self.wait_for_disks_released(snapshot, timeout=self.config.disk_release_timeout)

            create_start = self._log_operation_start(f"VM '{new_name}' creation")
            vm_result = self.create_vm_from_snapshot(snapshot, new_name)
            self._log_operation_end(f"VM '{new_name}' creation", create_start)
        except Exception as e:
            self.logger.error(f"❌ VM {old_name} was deleted but {new_name} could not be created: {e}")
            self.logger.info(f"💡 Disks and NICs are preserved. The configuration snapshot is in {state.snapshot_file}")
            self.logger.info(f"   To retry: python azure_vm_renamer.py restore -g {resource_group} "
                             f"--old-name {old_name} --new-name {new_name}")
            raise

        state.new_vm_created = True
        state.new_vm_id = vm_result.id
        self._save_state(state)

        self.logger.info(f"✅ VM renamed: {old_name} -> {new_name}")
        self.logger.info(f"📁 Resource Group: {resource_group}")
        self.logger.info(f"🖥️  VM: {vm_result.id}")
        self._log_operation_end(f"rename of VM '{old_name}' to '{new_name}'", overall_start)
        return vm_result

    def restore_vm(self, snapshot_file: str, new_name: Optional[str] = None) -> VirtualMachine:
        """Recreate a VM from a saved snapshot, e.g. after a rename failed halfway"""
        snapshot = self.load_snapshot(snapshot_file)
        vm_name = new_name or snapshot.vm_name

        restore_start = self._log_operation_start(f"VM '{vm_name}' restore from {snapshot_file}")
        if not validate_vm_name(vm_name):
            raise ValueError(f"'{vm_name}' is not a valid VM name")
        self._validate_name_available(snapshot.resource_group, vm_name)
        self._log_snapshot_summary(snapshot)
        self.verify_attached_resources(snapshot)

        vm_result = self.create_vm_from_snapshot(snapshot, vm_name)

        state = self._load_state(snapshot.vm_name)
        if state:
            state.new_name = vm_name
            state.new_vm_created = True
            state.new_vm_id = vm_result.id
            self._save_state(state)

        self._log_operation_end(f"VM '{vm_name}' restore", restore_start)
        return vm_result


def resolve_subscription_id(config: RenameConfig) -> Optional[str]:
    """Subscription from config/environment, falling back to the az cli default"""
    if config.subscription_id:
        return config.subscription_id
    try:
        result = subprocess.run(['az', 'account', 'show', '--query', 'id', '-o', 'tsv'],
                                capture_output=True, text=True, check=True)
        return result.stdout.strip() or None
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None


def main(argv=None):
    """Main CLI interface"""
    parser = argparse.ArgumentParser(description='Rename an Azure VM by recreating it with its existing disks and NICs')
    parser.add_argument('action', choices=['rename', 'check', 'restore'],
                        help='Action to perform')
    parser.add_argument('--subscription-id',
                        help='Azure subscription ID (will use az cli default if not provided)')
    parser.add_argument('--resource-group', '-g',
                        help='Resource group of the VM (overrides config.yaml)')
    parser.add_argument('--old-name',
                        help='Current VM name')
    parser.add_argument('--new-name',
                        help='New VM name')
    parser.add_argument('--snapshot',
                        help='Snapshot file to restore from (default: var/state/<old-name>_snapshot.json)')
    parser.add_argument('--yes', '-y', action='store_true',
                        help='Automatically answer yes to the confirmation prompt')

    args = parser.parse_args(argv)

    config = RenameConfig(
        subscription_id=args.subscription_id,
        resource_group=args.resource_group
    )

    subscription_id = resolve_subscription_id(config)
    if not subscription_id:
        print("Error: Could not get subscription ID from Azure CLI.")
        print("Please run 'az login' or provide --subscription-id")
        return 1

    if args.action in ('rename', 'check'):
        if not config.resource_group or not args.old_name or not args.new_name:
            print(f"Error: {args.action} requires --resource-group, --old-name and --new-name")
            return 1
    elif not args.snapshot and not args.old_name:
        print("Error: restore requires --snapshot or --old-name")
        return 1

    # Initialize renamer
    renamer = AzureVMRenamer(subscription_id, config)

    try:
        if args.action == 'check':
            print(f"Checking whether VM {args.old_name} can be renamed to {args.new_name}...")
            snapshot = renamer.check_vm(config.resource_group, args.old_name, args.new_name)
            print("✅ All checks passed, nothing was changed")
            print(f"Snapshot: {renamer.snapshot_path(snapshot.vm_name)}")

        elif args.action == 'rename':
            print(f"⚠️  WARNING: VM {args.old_name} will be deleted and recreated as {args.new_name}!")
            print("   Disks and network interfaces are kept; the VM will be stopped during the rename.")

            if args.yes:
                print("🚀 --yes flag provided, proceeding without confirmation...")
                confirm_rename = True
            else:
                response = input("Are you sure? Type 'yes' to confirm: ")
                confirm_rename = response.lower() == 'yes'

            if not confirm_rename:
                print("Operation cancelled")
                return 0

            vm = renamer.rename_vm(config.resource_group, args.old_name, args.new_name)
            print("✅ VM renamed successfully!")
            print(f"VM Name: {vm.name}")
            print(f"Resource Group: {config.resource_group}")

        elif args.action == 'restore':
            snapshot_file = args.snapshot or renamer.snapshot_path(args.old_name)
            print(f"Restoring VM from {snapshot_file}...")
            vm = renamer.restore_vm(snapshot_file, args.new_name)
            print("✅ VM restored successfully!")
            print(f"VM Name: {vm.name}")

    except Exception as e:
        error_msg = str(e)
        print(f"❌ Error: {error_msg}")

        # Provide helpful guidance for common errors
        if "would be deleted" in error_msg or "deleted with the VM" in error_msg:
            print("\n💡 Change the delete option of the listed disks/NICs to 'Detach', e.g.:")
            print(f"   az vm update -g {config.resource_group} -n {args.old_name} "
                  f"--set storageProfile.osDisk.deleteOption=Detach")
        elif "already exists" in error_msg:
            print("\n💡 Pick another name or check the current state with the 'check' command")

        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
