from __future__ import annotations

"""Bulk-register identities from a directory of face images.

Layouts accepted under `--images-dir`:
- `<name>.jpg` files (the file stem is the identity name)
- `<name>/` subdirectories (the first usable image is registered)

Also lists or deactivates registered identities.
"""

import argparse
import sys
from pathlib import Path

import cv2

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from securevision.app import build_face_engine
from securevision.config import FACE_ENGINES
from securevision.face_db import IdentityStore
from securevision.face_pipeline import FacePipeline


IMAGE_EXTS = {".jpg", ".jpeg", ".png", ".webp"}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Register face identities from image files.")
    parser.add_argument("--images-dir", help="Directory of <name>.jpg files or <name>/ subdirectories")
    parser.add_argument("--db-path", default="data/database/face_recognition.db", help="SQLite identity database")
    parser.add_argument("--faces-dir", default="data/faces", help="Where registered reference images are copied")
    parser.add_argument("--engine", default="insightface", choices=FACE_ENGINES, help="Face engine to embed with")
    parser.add_argument("--yolo-model", default="detection_models/yolov8n-face.pt", help="YOLO face weights")
    parser.add_argument("--list", action="store_true", help="List active identities and exit")
    parser.add_argument("--remove", metavar="NAME", help="Deactivate the identity with this name and exit")
    return parser.parse_args()


def collect_images(images_dir: Path) -> list[tuple[str, list[Path]]]:
    """Return `(name, candidate images)` pairs in name order."""
    entries: list[tuple[str, list[Path]]] = []
    for path in sorted(images_dir.iterdir()):
        if path.is_dir():
            images = sorted(p for p in path.iterdir() if p.suffix.lower() in IMAGE_EXTS)
            if images:
                entries.append((path.name, images))
        elif path.suffix.lower() in IMAGE_EXTS:
            entries.append((path.stem, [path]))
    return entries


def main() -> None:
    args = parse_args()
    store = IdentityStore(Path(args.db_path))
    try:
        if args.list:
            for record in store.records():
                print(f"{record.id:5d}  {record.name}  matches={record.match_count}  last_seen={record.last_seen or '-'}")
            print(f"Active identities: {store.count()}")
            return
        if args.remove:
            if store.deactivate(args.remove):
                print(f"Deactivated: {args.remove}")
            else:
                raise SystemExit(f"No active identity named {args.remove!r}")
            return
        if not args.images_dir:
            raise SystemExit("--images-dir is required unless --list or --remove is given")

        images_dir = Path(args.images_dir)
        if not images_dir.exists():
            raise SystemExit(f"Images dir not found: {images_dir}")

        pipeline = FacePipeline(
            build_face_engine(args.engine, args.yolo_model),
            store=store,
            faces_dir=Path(args.faces_dir),
        )
        if not pipeline.initialize():
            raise SystemExit(f"Face engine {args.engine!r} failed to initialize")

        registered = 0
        failed: list[str] = []
        for name, images in collect_images(images_dir):
            for image_path in images:
                image = cv2.imread(str(image_path))
                if image is not None and pipeline.register(name, image, description=f"imported from {image_path.name}"):
                    registered += 1
                    break
            else:
                failed.append(name)

        print(f"Registered identities: {registered}")
        print(f"Failed: {len(failed)}")
        for name in failed:
            print(f"  - {name}")
        print(f"Active identities: {store.count()}")
    finally:
        store.close()


if __name__ == "__main__":
    main()
