"""
Pytest configuration and shared fixtures for the Azure VM renamer tests.

Azure clients are mocked; VMs are built from the real compute models.
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from azure.core.exceptions import ResourceNotFoundError
from azure.mgmt.compute.models import (
    VirtualMachine, HardwareProfile, StorageProfile, OSDisk, DataDisk,
    NetworkProfile, NetworkInterfaceReference, ManagedDiskParameters,
    VirtualHardDisk, SecurityProfile, UefiSettings, VMDiskSecurityProfile,
    DiskEncryptionSetParameters
)

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from azure_vm_renamer import AzureVMRenamer, RenameConfig  # noqa: E402


SUBSCRIPTION = "00000000-0000-0000-0000-000000000000"
RESOURCE_GROUP = "test-rg"
DISK_ENCRYPTION_SET = (f"/subscriptions/{SUBSCRIPTION}/resourceGroups/keys-rg"
                       f"/providers/Microsoft.Compute/diskEncryptionSets/cvm-des")


def disk_id(name: str, resource_group: str = RESOURCE_GROUP) -> str:
    return (f"/subscriptions/{SUBSCRIPTION}/resourceGroups/{resource_group}"
            f"/providers/Microsoft.Compute/disks/{name}")


def nic_id(name: str, resource_group: str = RESOURCE_GROUP) -> str:
    return (f"/subscriptions/{SUBSCRIPTION}/resourceGroups/{resource_group}"
            f"/providers/Microsoft.Network/networkInterfaces/{name}")


def vm_id(name: str, resource_group: str = RESOURCE_GROUP) -> str:
    return (f"/subscriptions/{SUBSCRIPTION}/resourceGroups/{resource_group}"
            f"/providers/Microsoft.Compute/virtualMachines/{name}")


def created_vm(name):
    """Result of a finished begin_create_or_update poller."""
    result = MagicMock()
    result.id = vm_id(name)
    result.name = name
    return result


def make_vm(name="old-vm", managed=True, os_type="Windows", security_type=None,
            data_disk_count=1, nic_count=1, delete_option="Detach", tags=None):
    """Build a VirtualMachine as the compute API would return it."""
    os_disk = OSDisk(
        name=f"{name}-osdisk",
        create_option="FromImage",
        os_type=os_type,
        caching="ReadWrite",
        disk_size_gb=128,
        delete_option=delete_option,
    )
    if managed:
        os_disk.managed_disk = ManagedDiskParameters(
            id=disk_id(f"{name}-osdisk"), storage_account_type="Premium_LRS"
        )
        if security_type == "ConfidentialVM":
            os_disk.managed_disk.security_profile = VMDiskSecurityProfile(
                security_encryption_type="DiskWithVMGuestState",
                disk_encryption_set=DiskEncryptionSetParameters(id=DISK_ENCRYPTION_SET),
            )
    else:
        os_disk.vhd = VirtualHardDisk(
            uri=f"https://vhdstore.blob.core.windows.net/vhds/{name}-osdisk.vhd"
        )

    data_disks = []
    for lun in range(data_disk_count):
        data_disk = DataDisk(
            lun=lun,
            name=f"{name}-data{lun}",
            create_option="Attach",
            caching="ReadOnly",
            disk_size_gb=256,
            delete_option=delete_option,
        )
        if managed:
            data_disk.managed_disk = ManagedDiskParameters(id=disk_id(f"{name}-data{lun}"))
        else:
            data_disk.vhd = VirtualHardDisk(
                uri=f"https://vhdstore.blob.core.windows.net/vhds/{name}-data{lun}.vhd"
            )
        data_disks.append(data_disk)

    nics = [
        NetworkInterfaceReference(id=nic_id(f"{name}-nic{i}"), primary=(i == 0) if nic_count > 1 else None,
                                  delete_option=delete_option)
        for i in range(nic_count)
    ]

    vm = VirtualMachine(
        location="eastus",
        hardware_profile=HardwareProfile(vm_size="Standard_D4s_v3"),
        storage_profile=StorageProfile(os_disk=os_disk, data_disks=data_disks),
        network_profile=NetworkProfile(network_interfaces=nics),
        tags=tags if tags is not None else {"env": "test", "owner": "ops"},
    )
    if security_type:
        vm.security_profile = SecurityProfile(
            security_type=security_type,
            uefi_settings=UefiSettings(secure_boot_enabled=True, v_tpm_enabled=True),
        )

    # Read-only attributes are ignored by the model constructor
    vm.name = name
    vm.id = vm_id(name)
    return vm


# ============ Environment Fixtures ============

@pytest.fixture
def workdir(tmp_path: Path, monkeypatch) -> Path:
    """Run in an empty directory with no Azure settings in the environment."""
    monkeypatch.chdir(tmp_path)
    # setenv first so teardown removes whatever load_dotenv exports
    monkeypatch.setenv("AZURE_SUBSCRIPTION_ID", "placeholder")
    monkeypatch.delenv("AZURE_SUBSCRIPTION_ID")
    return tmp_path


# ============ Azure Fixtures ============

@pytest.fixture
def renamer(workdir):
    """AzureVMRenamer with every Azure client mocked."""
    with patch("azure_vm_renamer.DefaultAzureCredential"), \
            patch("azure_vm_renamer.ComputeManagementClient"), \
            patch("azure_vm_renamer.ResourceManagementClient"), \
            patch("azure_vm_renamer.NetworkManagementClient"), \
            patch("azure_vm_renamer.StorageManagementClient"):
        config = RenameConfig(wait_for_disk_release=False)
        renamer = AzureVMRenamer(SUBSCRIPTION, config)
        poller = renamer.compute_client.virtual_machines.begin_create_or_update.return_value
        poller.result.return_value = created_vm("new-vm")
        yield renamer


@pytest.fixture
def existing_vms(renamer):
    """Dictionary of VMs served by the mocked virtual_machines.get."""
    vms = {}

    def get_vm(resource_group, vm_name):
        if vm_name in vms:
            return vms[vm_name]
        raise ResourceNotFoundError(f"VM {vm_name} not found")

    renamer.compute_client.virtual_machines.get.side_effect = get_vm
    return vms
