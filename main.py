# main.py
"""
MAIN EXECUTION SCRIPT FOR THE CASCADE DETECTOR
Usage: python main.py --input <image or folder> [--output <folder>] [--cascade <xml/json>]
"""
import argparse
import json
import os
import sys
from pathlib import Path

import cv2
from tqdm import tqdm

from cascade_detector import (CascadeDetector, CascadeDetectorError, draw_detections,
                              face_tiles, load_config, with_overrides)

IMAGE_EXTENSIONS = ['.jpg', '.jpeg', '.png', '.bmp', '.tiff']


def find_images(input_path):
    """Single image file, or every image in a folder"""
    path = Path(input_path)
    if path.is_file():
        return [path]

    image_files = []
    for ext in IMAGE_EXTENSIONS:
        image_files.extend(path.glob(f'*{ext}'))
        image_files.extend(path.glob(f'*{ext.upper()}'))
    return sorted(set(image_files))


def save_results(image_name, image_shape, detections, output_dir, tiles=None):
    """Write detections (and tiles) of one image as JSON"""
    result_file = os.path.join(output_dir, f"{image_name}_detections.json")
    height, width = image_shape[:2]

    result = {
        'image': image_name,
        'width': width,
        'height': height,
        'detections': [det._asdict() for det in detections],
    }
    if tiles is not None:
        result['tiles'] = tiles

    with open(result_file, 'w') as f:
        json.dump(result, f, indent=2)
    return result_file


def build_parser():
    parser = argparse.ArgumentParser(description='Haar cascade object detector')
    parser.add_argument('--input', required=True, help='Input image or folder containing images')
    parser.add_argument('--output', help='Output folder for results')
    parser.add_argument('--cascade', help='Cascade definition (XML or JSON); '
                                          'defaults to the OpenCV frontal face cascade')
    parser.add_argument('--config', default='config.json', help='Path to config file')

    parser.add_argument('--scale-factor', type=float, help='Ratio between successive window sizes')
    parser.add_argument('--min-neighbors', type=int, help='Minimum hits per detection')
    parser.add_argument('--min-size', type=int, help='Smallest window in pixels')
    parser.add_argument('--max-size', type=int, help='Largest window in pixels')
    parser.add_argument('--step-ratio', type=float, help='Window stride as a fraction of its size')
    parser.add_argument('--workers', type=int, help='Threads scanning scale levels')
    parser.add_argument('--equalize', action='store_true', default=None,
                        help='Equalize the histogram before detecting')

    parser.add_argument('--tiles', type=int, default=0,
                        help='Also report the NxN grid tile of each detection')
    parser.add_argument('--save-vis', action='store_true', help='Save annotated images')
    parser.add_argument('--limit', type=int, default=0, help='Limit number of images to process')
    return parser


def main(argv=None):
    """Main execution function"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not os.path.exists(args.input):
        print(f"Error: Input '{args.input}' does not exist")
        return 1

    if args.output:
        os.makedirs(args.output, exist_ok=True)
        if args.save_vis:
            os.makedirs(os.path.join(args.output, 'images'), exist_ok=True)

    try:
        config = load_config(args.config)
        config = with_overrides(
            config,
            scale_factor=args.scale_factor,
            min_neighbors=args.min_neighbors,
            min_size=args.min_size,
            max_size=args.max_size,
            step_ratio=args.step_ratio,
            workers=args.workers,
            equalize_hist=args.equalize,
        )
        detector = CascadeDetector.from_file(args.cascade, config=config, verbose=True)
    except CascadeDetectorError as e:
        print(f"Error: {e}")
        return 1

    image_files = find_images(args.input)
    print(f"Found {len(image_files)} images in '{args.input}'")

    if args.limit > 0:
        image_files = image_files[:args.limit]
        print(f"Limiting to {len(image_files)} images")

    processed_count = 0
    total_detections = 0
    detector.verbose = len(image_files) == 1

    for img_path in tqdm(image_files, desc="Detecting"):
        image = cv2.imread(str(img_path))
        if image is None:
            tqdm.write(f"Warning: Could not load {img_path}")
            continue

        try:
            detections = detector.detect(image)
        except CascadeDetectorError as e:
            tqdm.write(f"Error processing {img_path}: {e}")
            continue

        height, width = image.shape[:2]
        tiles = face_tiles(detections, width, height, grid=args.tiles) if args.tiles > 0 else None

        tqdm.write(f"{img_path.name}: {len(detections)} detections")
        for det in detections:
            tqdm.write(f"  x={det.x} y={det.y} w={det.w} h={det.h} hits={det.hit_count}")
        if tiles is not None:
            tqdm.write(f"  tiles: {tiles}")

        if args.output:
            save_results(img_path.stem, image.shape, detections, args.output, tiles)
            if args.save_vis:
                vis_path = os.path.join(args.output, 'images', f"{img_path.stem}_result.jpg")
                cv2.imwrite(vis_path, draw_detections(image, detections))

        processed_count += 1
        total_detections += len(detections)

    # Summary
    print(f"\n{'='*60}")
    print("PROCESSING COMPLETE")
    print(f"{'='*60}")
    print(f"Total images processed: {processed_count}/{len(image_files)}")
    print(f"Total detections: {total_detections}")
    if args.output:
        print(f"Output folder: {args.output}")
    print(f"{'='*60}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
