import argparse
import os
import time

import mesh_io
from geometry_core import compute_geometry


def bench_file(path: str, repeat: int = 1) -> dict:
    best_decode = best_geometry = float("inf")
    for _ in range(max(1, repeat)):
        started = time.perf_counter()
        model = mesh_io.decode_file(path)
        decoded = time.perf_counter()
        geometry = compute_geometry(model.mesh)
        finished = time.perf_counter()
        best_decode = min(best_decode, decoded - started)
        best_geometry = min(best_geometry, finished - decoded)
    return {
        "file": path,
        "format": model.file_format,
        "triangles": geometry.triangle_count,
        "volume_cm3": geometry.volume_cm3,
        "decode_s": best_decode,
        "geometry_s": best_geometry,
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Benchmark decode + geometry for STL / OBJ / 3MF files.")
    parser.add_argument("files", nargs="+", help="Model files to decode.")
    parser.add_argument("--repeat", type=int, default=3, help="Runs per file, best time is reported.")
    args = parser.parse_args()

    for path in args.files:
        r = bench_file(path, args.repeat)
        print(
            f"{r['format']} file={os.path.basename(path)} triangles={r['triangles']} "
            f"volume_cm3={r['volume_cm3']:.6f} decode_s={r['decode_s']:.6f} geometry_s={r['geometry_s']:.6f}"
        )


if __name__ == "__main__":
    main()
