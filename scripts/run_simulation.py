#!/usr/bin/env python3
"""Helper script to run the simulator and localization pipeline locally."""
import argparse
import os
import subprocess

parser = argparse.ArgumentParser()
parser.add_argument("--out", required=True)
parser.add_argument("--rotations", type=int, default=5)
parser.add_argument("--config", default=None)
args = parser.parse_args()

session_dir = os.path.abspath(args.out)

# run simulator
subprocess.check_call([
    "python3", "-m", "simulation.generate_synthetic",
    "--out", session_dir, "--rotations", str(args.rotations), "--seed", "0",
])
# run localization
cmd = [
    "python3", "-m", "processing.pipeline",
    "--stream", os.path.join(session_dir, "stream.bin"),
    "--floor-plan", os.path.join(session_dir, "floor_plan.json"),
]
if args.config:
    cmd += ["--config", args.config]
subprocess.check_call(cmd)
print("Done. expected poses in:", os.path.join(session_dir, "poses.json"))
