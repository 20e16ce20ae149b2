#!/usr/bin/env python3
"""
BLE connection diagnostics and troubleshooting tool for the TechPolo mallet.
"""

import sys
import os
import asyncio
import subprocess
import platform
import logging
from typing import Optional

# Add the package to the path (from scripts/ to src/)
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

# Configure logging for diagnostics tool
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",  # Simple format for user-friendly output
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

from bleak import BleakClient, BleakScanner  # noqa: E402
from bleak.backends.device import BLEDevice  # noqa: E402
from bleak.exc import BleakError  # noqa: E402

from mallet_monitor.errors import DecodeError  # noqa: E402
from mallet_monitor.gatt import (  # noqa: E402
    CHANNEL_BY_UUID,
    DEVICE_NAME,
    SERVICE_UUID,
    decode_sample,
    normalize_uuid,
)


def check_bluetooth_status() -> bool:
    """Check if Bluetooth is available and working."""
    logger.info("🔵 Checking Bluetooth status...")

    system = platform.system().lower()

    if system == "darwin":  # macOS
        command = ["system_profiler", "SPBluetoothDataType"]
        marker = "State: On"
    elif system == "linux":
        command = ["bluetoothctl", "show"]
        marker = "Powered: yes"
    else:
        logger.warning(f"⚠️ Bluetooth status check not implemented for {system}")
        return True  # Assume it's working

    try:
        result = subprocess.run(command, capture_output=True, text=True, timeout=10)
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning(f"⚠️ Could not check Bluetooth status on {system}: {e}")
        return True  # Assume it's working

    if marker in result.stdout:
        logger.info(f"✅ Bluetooth is powered on ({system})")
        return True
    logger.error(f"❌ Bluetooth appears to be powered off ({system})")
    return False


async def scan_for_devices(duration: float = 10.0) -> Optional[BLEDevice]:
    """Scan for nearby BLE devices and return the mallet if it is advertising."""
    logger.info(f"📡 Scanning for BLE devices for {duration}s...")

    try:
        devices_adv = await BleakScanner.discover(timeout=duration, return_adv=True)
    except BleakError as e:
        logger.error(f"❌ Error during BLE scan: {e}")
        return None

    if not devices_adv:
        logger.error("❌ No BLE devices found")
        logger.info("💡 Troubleshooting:")
        logger.info("   - Make sure the mallet is powered on")
        logger.info("   - Check that the mallet is advertising")
        logger.info("   - Move closer to the mallet")
        return None

    logger.info(f"✅ Found {len(devices_adv)} BLE device(s):")

    mallet: Optional[BLEDevice] = None
    for device, adv in devices_adv.values():
        name = adv.local_name or device.name or "Unknown"
        logger.info(f"   📱 {name} ({device.address}) RSSI: {adv.rssi}dBm")
        if name == DEVICE_NAME and mallet is None:
            mallet = device
            logger.info("      🎯 Mallet found!")

    if mallet is None:
        logger.warning(f"\n⚠️ No device advertising as '{DEVICE_NAME}' found")
    return mallet


async def check_gatt(device: BLEDevice, listen: float = 5.0) -> None:
    """Connect to the mallet, verify its GATT layout and sample each channel."""
    logger.info(f"\n🔌 Testing connection to {DEVICE_NAME} ({device.address})...")

    received: dict[str, list[float]] = {uuid: [] for uuid in CHANNEL_BY_UUID}
    decode_errors = 0

    def make_handler(uuid: str):  # type: ignore[no-untyped-def]
        def handle(_sender: object, data: bytearray) -> None:
            nonlocal decode_errors
            try:
                received[uuid].append(decode_sample(bytes(data)))
            except DecodeError as e:
                decode_errors += 1
                logger.warning(f"⚠️ {e}")

        return handle

    try:
        async with BleakClient(device, timeout=20.0) as client:
            logger.info("✅ Connected")

            service = client.services.get_service(SERVICE_UUID)
            if service is None:
                logger.error(f"❌ Service {SERVICE_UUID} not found")
                return
            logger.info(f"✅ Service {SERVICE_UUID} present")

            present = {normalize_uuid(c.uuid): c for c in service.characteristics}
            for uuid, channel in CHANNEL_BY_UUID.items():
                characteristic = present.get(uuid)
                if characteristic is None:
                    logger.error(f"❌ {channel.label}: characteristic {uuid} missing")
                    continue
                if "notify" not in characteristic.properties:
                    logger.error(f"❌ {channel.label}: notify not supported")
                    continue
                await client.start_notify(characteristic, make_handler(uuid))
                logger.info(f"✅ {channel.label}: subscribed")

            logger.info(f"📊 Listening for {listen:.0f}s...")
            await asyncio.sleep(listen)

    except (BleakError, asyncio.TimeoutError, OSError) as e:
        logger.error(f"❌ Connection test failed: {e}")
        return

    for uuid, values in received.items():
        label = CHANNEL_BY_UUID[uuid].label
        if values:
            logger.info(f"📈 {label}: {len(values)} samples, last={values[-1]:.3f}")
        else:
            logger.warning(f"⚠️ {label}: no notifications received")
    if decode_errors:
        logger.warning(f"⚠️ {decode_errors} payload(s) were not 4-byte floats")


async def main() -> None:
    """Run BLE diagnostics."""
    logger.info("🔧 TechPolo Mallet BLE Diagnostics")
    logger.info("=" * 40)

    if not check_bluetooth_status():
        logger.error(
            "\n❌ Bluetooth issues detected. Please enable Bluetooth and try again."
        )
        return

    mallet = await scan_for_devices(duration=10.0)
    if mallet is not None:
        await check_gatt(mallet)

    logger.info("\n🏁 Diagnostics complete")
    logger.info("\n💡 If you're still having connection issues:")
    logger.info("   1. Restart the mallet")
    logger.info("   2. Move closer to reduce interference")
    logger.info("   3. Make sure no phone is already connected to the mallet")
    logger.info("   4. Try the dashboard with --mock to rule out UI problems")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("\n👋 Diagnostics cancelled by user")
