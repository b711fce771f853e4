#!/usr/bin/env python3
"""Creates the project directories and downloads the raw flower photos."""
from __future__ import annotations

import sys
import tarfile
import urllib.request
from pathlib import Path

from tqdm import tqdm

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

import config

DIRECTORIES_TO_CREATE = [
    config.DATA_ROOT,
    config.TRAIN_FOLDER,
    config.TEST_FOLDER,
    config.MODEL_PATH.parent,
    config.UI_LOG_DIR,
]


class bcolors:
    HEADER, OKBLUE, OKGREEN, WARNING, FAIL, ENDC, BOLD = (
        "\033[95m",
        "\033[94m",
        "\033[92m",
        "\033[93m",
        "\033[91m",
        "\033[0m",
        "\033[1m",
    )


def print_step(msg):
    print(f"\n{bcolors.HEADER}{bcolors.BOLD}--- {msg} ---{bcolors.ENDC}")


def print_info(msg):
    print(f"{bcolors.OKBLUE}[INFO]{bcolors.ENDC} {msg}")


def print_success(msg):
    print(f"{bcolors.OKGREEN}[SUCCESS]{bcolors.ENDC} {msg}")


def print_warning(msg):
    print(f"{bcolors.WARNING}[WARNING]{bcolors.ENDC} {msg}")


def print_error(msg):
    print(f"{bcolors.FAIL}[ERROR]{bcolors.ENDC} {msg}")
    sys.exit(1)


class TqdmUpTo(tqdm):
    def update_to(self, b=1, bsize=1, tsize=None):
        if tsize is not None:
            self.total = tsize
        self.update(b * bsize - self.n)


def download_file(url, outfile, desc=None, ignore_if_exists=True):
    outfile = Path(outfile)
    if ignore_if_exists and outfile.exists():
        print_info(f"Skipping existing file: {outfile}")
        return True
    print_info(f"Downloading {desc or outfile.name} from {url}")
    try:
        with TqdmUpTo(unit="B", unit_scale=True, miniters=1, desc=desc or outfile.name) as t:
            urllib.request.urlretrieve(url, filename=outfile, reporthook=t.update_to)
        return True
    except OSError as e:
        print_warning(f"Failed to download {url}. Error: {e}")
        if outfile.exists():
            outfile.unlink()
        return False


def create_directories():
    print_step("STEP 1: CREATING PROJECT DIRECTORIES")
    for d in DIRECTORIES_TO_CREATE:
        Path(d).mkdir(parents=True, exist_ok=True)
        print_info(f"Created/Verified: {d}")
    print_success("All project directories are ready.")


def download_flower_photos():
    print_step("STEP 2: DOWNLOADING FLOWER PHOTOS")
    if config.FLOWER_PHOTOS_DIR.is_dir() and any(config.FLOWER_PHOTOS_DIR.iterdir()):
        print_info(f"Skipping existing photos in {config.FLOWER_PHOTOS_DIR}")
        return

    archive = config.FLOWER_PHOTOS_ARCHIVE
    if not download_file(config.FLOWER_PHOTOS_URL, archive, desc="flower_photos"):
        print_error("Could not download the flower photos.")

    print_info(f"Extracting {archive.name}...")
    try:
        with tarfile.open(archive, "r:gz") as tf:
            tf.extractall(config.DATA_ROOT, filter="data")
    except (tarfile.TarError, OSError) as e:
        print_error(f"Failed extracting {archive}: {e}")

    # The archive ships a license file next to the class folders
    license_file = config.FLOWER_PHOTOS_DIR / "LICENSE.txt"
    if license_file.exists():
        license_file.rename(config.DATA_ROOT / "flower_photos_LICENSE.txt")
    archive.unlink()
    print_success(f"Photos extracted to {config.FLOWER_PHOTOS_DIR}")


def main():
    create_directories()
    download_flower_photos()
    print_step("STEP 3: FINAL NOTES")
    print_success("\nDATA SETUP COMPLETE!")
    print(
        "Next Steps:\n1. Run 'python preprocess.py' to featurize the photos.\n2. Run 'python train.py'."
    )


if __name__ == "__main__":
    main()
