#!/usr/bin/env python3
"""LD06 diagnostic script for Planpose.

Opens the serial port, listens for a few seconds and reports whether valid
frames arrive, how many fail their checksum and how fast the sensor spins.

Usage:
    python3 scripts/diagnose_hardware.py --device /dev/ttyUSB0
    python3 scripts/diagnose_hardware.py --seconds 5
"""

import argparse
import os
import sys
import time
from pathlib import Path

import serial

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from capture.packet_decoder import PacketDecoder  # noqa: E402
from capture.rotation import RotationAssembler  # noqa: E402


def check_lidar(device: str = "/dev/ttyUSB0", baudrate: int = 230400, seconds: float = 3.0) -> dict:
    """Check LD06 connectivity and stream health."""
    results = {
        "device_exists": False,
        "device_readable": False,
        "serial_open": False,
        "frames_valid": False,
        "stats": {},
        "errors": [],
        "warnings": [],
    }

    print("\n" + "=" * 50)
    print("LIDAR DIAGNOSTICS")
    print("=" * 50)

    print(f"\nChecking device: {device}")
    if not os.path.exists(device):
        print("  ✗ Device not found")
        results["errors"].append(f"Device {device} not found")
        alternatives = ["/dev/ttyUSB0", "/dev/ttyUSB1", "/dev/ttyACM0"]
        found = [d for d in alternatives if os.path.exists(d)]
        if found:
            print(f"  ! Found alternatives: {', '.join(found)}")
            results["warnings"].append(f"Try using: {found[0]}")
        else:
            results["errors"].append("Check USB connection and udev rules")
        return results
    results["device_exists"] = True
    print("  ✓ Device exists")

    if not os.access(device, os.R_OK):
        print("  ✗ Permission denied")
        results["errors"].append("Add user to dialout group: sudo usermod -aG dialout $USER")
        return results
    results["device_readable"] = True

    try:
        ser = serial.Serial(port=device, baudrate=baudrate, timeout=0.5)
    except (serial.SerialException, OSError) as e:
        print(f"  ✗ Error: {e}")
        results["errors"].append(str(e))
        return results
    results["serial_open"] = True
    print(f"  ✓ Serial port opened at {baudrate} baud")

    decoder = PacketDecoder()
    assembler = RotationAssembler(decoder)
    rotations = 0
    total_bytes = 0
    print(f"\nListening for {seconds:.0f}s...")
    started = time.time()
    try:
        while time.time() - started < seconds:
            data = ser.read(512)
            total_bytes += len(data)
            rotations += len(assembler.feed(data))
    finally:
        ser.close()
    elapsed = time.time() - started

    results["stats"] = {
        "bytes": total_bytes,
        "frames": decoder.frames_decoded,
        "corrupted": decoder.corrupted_packets,
        "rotations": rotations,
        "rotation_hz": rotations / elapsed if elapsed > 0 else 0.0,
    }
    stats = results["stats"]
    print(f"  Bytes:     {stats['bytes']}")
    print(f"  Frames:    {stats['frames']}")
    print(f"  Corrupted: {stats['corrupted']}")
    print(f"  Rotations: {stats['rotations']} ({stats['rotation_hz']:.1f} Hz)")

    if decoder.frames_decoded == 0:
        results["errors"].append("No valid frames. Check baudrate and that the motor spins.")
    else:
        results["frames_valid"] = True
        failed = decoder.corrupted_packets / (decoder.frames_decoded + decoder.corrupted_packets)
        if failed > 0.05:
            results["warnings"].append(f"{failed:.0%} of frames failed CRC; check cable and power")
    return results


def print_summary(lidar_results: dict):
    """Print summary and recommendations."""
    print("\n" + "=" * 50)
    print("SUMMARY")
    print("=" * 50)

    ok = lidar_results.get("frames_valid", False)
    print(f"\nLiDAR: {'✓' if ok else '✗'}")
    for w in lidar_results.get("warnings", []):
        print(f"  ! {w}")
    if not ok:
        print("\nRequired fixes:")
        for i, e in enumerate(lidar_results.get("errors", []), 1):
            print(f"  {i}. {e}")


def main():
    parser = argparse.ArgumentParser(description="Diagnose LD06 lidar")
    parser.add_argument("--device", default="/dev/ttyUSB0", help="Serial device path")
    parser.add_argument("--baudrate", type=int, default=230400, help="Serial baudrate")
    parser.add_argument("--seconds", type=float, default=3.0, help="Listening time")
    args = parser.parse_args()

    print("Planpose Hardware Diagnostics")
    print("=============================")

    results = check_lidar(args.device, args.baudrate, args.seconds)
    print_summary(results)
    return 0 if results.get("frames_valid") else 1


if __name__ == "__main__":
    sys.exit(main())
