#!/usr/bin/python3
# 90Hz display fix for the Chuwi MiniBook X (N100/N150).
#
# Installs a patched VBT (Video BIOS Table) that makes the internal panel run at 90Hz:
#   1. Backs up the original VBT (if present) to /lib/firmware/vbt_original_backup.bin
#   2. Copies vbt_patched.bin (next to this script) to /lib/firmware/vbt
#   3. Adds /lib/firmware/vbt to FILES=() in /etc/mkinitcpio.conf
#   4. Adds i915.vbt_firmware=vbt to KERNEL_CMDLINE[default] in /etc/default/limine
#   5. Rebuilds the initramfs with limine-mkinitcpio (or mkinitcpio -P)
#
# Usage: sudo ./install_90hz.py
# A reboot is required afterwards.
#
# To revert, copy /lib/firmware/vbt_original_backup.bin back to /lib/firmware/vbt,
# run limine-mkinitcpio and optionally remove i915.vbt_firmware=vbt from /etc/default/limine.
import subprocess
import os
import re
import sys
import shutil

# region Script Helpers
def WriteFile(filePath, contents, binary=False):
	filePath = os.path.realpath(os.path.expanduser(filePath))
	os.makedirs(os.path.dirname(filePath), exist_ok=True)
	with open(filePath, "wb" if binary else "w", encoding=(None if binary else "UTF-8")) as file:
		file.write(contents)
def ReadFile(filePath, defaultContents=None, binary=False):
	filePath = os.path.realpath(os.path.expanduser(filePath))
	if not os.path.exists(filePath):
		if defaultContents != None:
			return defaultContents
	with open(filePath, "rb" if binary else "r", encoding=(None if binary else "UTF-8")) as file:
		return file.read()
def RunCommand(command, echo=False):
	result = subprocess.run(command, stdout=(None if echo else subprocess.PIPE), stderr=(None if echo else subprocess.STDOUT), check=False, shell=True, text=True)
	if result.returncode != 0:
		if result.stdout:
			print(result.stdout)
		raise Exception(f"Sub-process returned non-zero exit code.\nExitCode: {result.returncode}\nCmdLine: {command}")
	return result.returncode
def PrintInfo(message):
	print(f"\033[92m[INFO]\033[0m {message}")
def PrintWarning(message):
	print(f"\033[93mWarning: {message}\033[0m")
def PrintError(message):
	print(f"\033[91mERROR: {message}\033[0m")
# endregion

PATCHED_VBT_NAME = "vbt_patched.bin"
FIRMWARE_PATH = "/lib/firmware/vbt"
BACKUP_PATH = "/lib/firmware/vbt_original_backup.bin"
FIRMWARE_MODE = 0o644
MKINITCPIO_CONF_PATH = "/etc/mkinitcpio.conf"
LIMINE_CONF_PATH = "/etc/default/limine"
CMDLINE_PARAM = "i915.vbt_firmware=vbt"
# Probed in order. (binary to look for, command line to run)
REBUILD_COMMANDS = [
	("limine-mkinitcpio", "limine-mkinitcpio"),
	("mkinitcpio", "mkinitcpio -P"),
]

FILES_DECL_PATTERN = re.compile(r"^FILES=\(((?:#[^\n]*+|[^)#])*)\)", re.MULTILINE)
CMDLINE_DECL_PATTERN = re.compile(r"^(KERNEL_CMDLINE\[default\]\+?=)([\"'])((?:\\.|(?!\2).)*)\2", re.MULTILINE)

class InstallError(Exception):
	pass

def SystemPath(root, path):
	return os.path.join(root, path.lstrip("/"))

def ContainsWord(contents, word):
	# /lib/firmware/vbt must not match /lib/firmware/vbt_original_backup.bin or /usr/lib/firmware/vbt
	return re.search(r"(?<![\w./=-])" + re.escape(word) + r"(?![\w./=-])", contents) != None

def AddFirmwareToFiles(contents, firmware_path):
	if ContainsWord(contents, firmware_path):
		return contents
	matches = list(FILES_DECL_PATTERN.finditer(contents))
	if len(matches) == 0:
		if contents != "" and not contents.endswith("\n"):
			contents += "\n"
		return contents + f"FILES=({firmware_path})\n"
	# Bash keeps the last assignment when it sources mkinitcpio.conf
	match = matches[-1]
	items = match.group(1)
	if items.strip() == "":
		new_items = firmware_path
	elif "\n" in items:
		new_items = f"{items.rstrip()}\n  {firmware_path}\n"
	else:
		new_items = f"{items.rstrip()} {firmware_path}"
	return contents[:match.start()] + f"FILES=({new_items})" + contents[match.end():]

def AddCmdlineParam(contents, param):
	if ContainsWord(contents, param):
		return contents
	matches = list(CMDLINE_DECL_PATTERN.finditer(contents))
	if len(matches) == 0:
		raise InstallError(f"Could not find KERNEL_CMDLINE[default] in the Limine config. Please add '{param}' to your kernel cmdline manually.")
	match = matches[-1]
	value = match.group(3)
	new_value = f"{value} {param}" if value.strip() != "" else param
	quote = match.group(2)
	return contents[:match.start()] + f"{match.group(1)}{quote}{new_value}{quote}" + contents[match.end():]

def PrepareLimineConf(root):
	limine_conf_path = SystemPath(root, LIMINE_CONF_PATH)
	if not os.path.isfile(limine_conf_path):
		raise InstallError(f"{LIMINE_CONF_PATH} not found. Is Limine your bootloader? If you use a different bootloader, add '{CMDLINE_PARAM}' to your kernel cmdline manually.")
	return AddCmdlineParam(ReadFile(limine_conf_path), CMDLINE_PARAM)

def BackupFirmware(root):
	firmware_path = SystemPath(root, FIRMWARE_PATH)
	backup_path = SystemPath(root, BACKUP_PATH)
	if not os.path.exists(firmware_path):
		PrintInfo(f"No existing VBT at {FIRMWARE_PATH}. Nothing to back up.")
	elif os.path.exists(backup_path):
		PrintWarning(f"Backup already exists at {BACKUP_PATH}. Skipping backup.")
	else:
		WriteFile(backup_path, ReadFile(firmware_path, binary=True), binary=True)
		PrintInfo(f"Original VBT backed up to {BACKUP_PATH}.")

def InstallFirmware(patched_vbt_path, root):
	firmware_path = SystemPath(root, FIRMWARE_PATH)
	WriteFile(firmware_path, ReadFile(patched_vbt_path, binary=True), binary=True)
	os.chmod(firmware_path, FIRMWARE_MODE)
	PrintInfo(f"Patched VBT installed to {FIRMWARE_PATH}.")

def UpdateMkinitcpioConf(root):
	mkinitcpio_conf_path = SystemPath(root, MKINITCPIO_CONF_PATH)
	old_conf = ReadFile(mkinitcpio_conf_path, defaultContents="")
	new_conf = AddFirmwareToFiles(old_conf, FIRMWARE_PATH)
	if new_conf == old_conf:
		PrintInfo(f"{MKINITCPIO_CONF_PATH} already references {FIRMWARE_PATH}. No changes needed.")
		return
	WriteFile(mkinitcpio_conf_path, new_conf)
	PrintInfo(f"Added {FIRMWARE_PATH} to FILES in {MKINITCPIO_CONF_PATH}.")

def UpdateLimineConf(root, new_conf):
	limine_conf_path = SystemPath(root, LIMINE_CONF_PATH)
	if ReadFile(limine_conf_path) == new_conf:
		PrintInfo(f"Kernel cmdline already contains {CMDLINE_PARAM}. No changes needed.")
		return
	WriteFile(limine_conf_path, new_conf)
	PrintInfo(f"Added {CMDLINE_PARAM} to kernel cmdline.")

def RebuildInitramfs():
	for binary, command in REBUILD_COMMANDS:
		if shutil.which(binary) != None:
			RunCommand(command, echo=True)
			PrintInfo(f"Initramfs rebuilt successfully (via {command}).")
			return
	names = " nor ".join([ binary for binary, _ in REBUILD_COMMANDS ])
	raise InstallError(f"Neither {names} found. Please rebuild your initramfs manually.")

def InstallPatch(patched_vbt_path, root="/"):
	# Checked before anything is written so a missing or unknown Limine config leaves the system untouched.
	limine_conf = PrepareLimineConf(root)

	print("Step 1: Backing up original VBT...")
	BackupFirmware(root)

	print(f"Step 2: Installing patched VBT to {FIRMWARE_PATH}...")
	InstallFirmware(patched_vbt_path, root)

	print(f"Step 3: Updating {MKINITCPIO_CONF_PATH}...")
	UpdateMkinitcpioConf(root)

	print(f"Step 4: Updating kernel cmdline in {LIMINE_CONF_PATH}...")
	UpdateLimineConf(root, limine_conf)

	print("Step 5: Rebuilding initramfs for all kernels...")
	RebuildInitramfs()

def Main():
	script_path = os.path.realpath(__file__)
	script_name = os.path.basename(script_path)

	if os.geteuid() != 0 or os.getegid() != 0:
		PrintError(f"Root is required to run {script_name}. Try sudo {script_name}.")
		return 1
	patched_vbt_path = os.path.join(os.path.dirname(script_path), PATCHED_VBT_NAME)
	if not os.path.isfile(patched_vbt_path):
		PrintError(f"Patched VBT file not found at {patched_vbt_path}. It should be next to this script.")
		return 1

	try:
		InstallPatch(patched_vbt_path)
	except Exception as ex:
		PrintError(str(ex))
		return 1

	print()
	PrintInfo("90Hz patch installed successfully!")
	PrintInfo("Please reboot to apply the changes.")
	print()
	return 0

if __name__ == "__main__":
	sys.exit(Main())
