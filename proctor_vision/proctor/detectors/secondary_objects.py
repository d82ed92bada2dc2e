"""
Secondary Object Detector - Extra faces and handheld devices in the frame

Faces: skin-colored connected regions with dark eye/mouth sub-regions.
Devices: bright, phone-proportioned rectangles found on a Sobel edge map,
scored by motion and screen glare. Both kinds are tracked across frames and
only reported as detected after enough sightings.
"""

import itertools
import logging
import math
from collections import defaultdict
from typing import Dict, Any, List, Optional, Set, Tuple

import cv2
import numpy as np

from ..types import (
    BoundingBox,
    DetectedRegion,
    ObjectDetection,
    ObjectDetectionResult,
    RegionKind
)
from ..utils.frame_quality import ensure_frame, to_luma

logger = logging.getLogger(__name__)


class RegionTracker:
    """
    Tracks regions of one kind across frames.
    
    Regions are indexed on a grid whose cell size equals the match distance;
    a new observation joins the nearest unmatched track in its own or a
    neighbouring cell, otherwise it starts a new track with a fresh integer ID.
    """
    
    def __init__(
        self,
        kind: RegionKind,
        match_distance: float = 24.0,
        max_age: int = 30,
        history_size: int = 10
    ):
        self.kind = kind
        self.match_distance = match_distance
        self.max_age = max_age
        self.history_size = history_size
        
        self._tracks: Dict[int, DetectedRegion] = {}
        self._grid: Dict[Tuple[int, int], Set[int]] = defaultdict(set)
        self._ids = itertools.count(1)
    
    @property
    def tracks(self) -> List[DetectedRegion]:
        return list(self._tracks.values())
    
    def __len__(self) -> int:
        return len(self._tracks)
    
    def _cell(self, box: BoundingBox) -> Tuple[int, int]:
        cx, cy = box.center
        return (int(cx // self.match_distance), int(cy // self.match_distance))
    
    def _nearest(self, box: BoundingBox, frame_index: int) -> Optional[DetectedRegion]:
        cx, cy = box.center
        col, row = self._cell(box)
        best, best_distance = None, self.match_distance
        
        for dc in (-1, 0, 1):
            for dr in (-1, 0, 1):
                for track_id in self._grid.get((col + dc, row + dr), ()):
                    track = self._tracks[track_id]
                    if track.last_seen_frame == frame_index:
                        continue
                    tx, ty = track.bounding_box.center
                    distance = math.hypot(cx - tx, cy - ty)
                    if distance <= best_distance:
                        best, best_distance = track, distance
        return best
    
    def update(
        self,
        box: BoundingBox,
        confidence: float,
        frame_index: int,
        motion: Optional[float] = None,
        highlight: Optional[float] = None
    ) -> DetectedRegion:
        """Record a sighting and return the (new or updated) track"""
        track = self._nearest(box, frame_index)
        
        if track is None:
            track = DetectedRegion(
                track_id=next(self._ids),
                kind=self.kind,
                bounding_box=box,
                confidence=confidence,
                consecutive_frames_seen=1,
                last_seen_frame=frame_index
            )
            self._tracks[track.track_id] = track
        else:
            self._grid[self._cell(track.bounding_box)].discard(track.track_id)
            track.bounding_box = box
            track.confidence = max(track.confidence, confidence)
            track.consecutive_frames_seen += 1
            track.last_seen_frame = frame_index
        
        self._grid[self._cell(box)].add(track.track_id)
        
        if motion is not None:
            track.motion_history = (track.motion_history + [motion])[-self.history_size:]
        if highlight is not None:
            track.highlight_history = (track.highlight_history + [highlight])[-self.history_size:]
        
        return track
    
    def evict(self, frame_index: int) -> int:
        """Drop tracks unseen for more than max_age frames"""
        stale = [
            track for track in self._tracks.values()
            if frame_index - track.last_seen_frame > self.max_age
        ]
        for track in stale:
            self._grid[self._cell(track.bounding_box)].discard(track.track_id)
            del self._tracks[track.track_id]
        if stale:
            logger.debug(f"Evicted {len(stale)} stale {self.kind.value} track(s)")
        return len(stale)
    
    def reset(self):
        self._tracks.clear()
        self._grid.clear()


class SecondaryObjectDetector:
    """
    Finds additional faces and device-like rectangles in a frame.
    
    Pure pixel heuristics (no model): skin-color region growing for faces,
    edge-rectangle search for devices.
    """
    
    THRESHOLDS: Dict[str, float] = {
        "face_confidence": 0.6,
        "device_confidence": 0.5,
        "motion": 0.3,
        "highlight": 0.7,
        "min_area_fraction": 0.02,
        "max_area_fraction": 0.3,
        "primary_overlap": 0.3,
        "device_aspect_min": 0.4,
        "device_aspect_max": 0.8,
        "edge_magnitude": 50.0,
        "side_coverage": 0.3
    }
    
    # Skin grid sampling stride (pixels)
    GRID_STRIDE = 4
    
    # Luminance cut-offs
    DARK_LUMA = 80
    DARK_FRACTION = 0.3
    HIGHLIGHT_LUMA = 200
    
    def __init__(
        self,
        min_consecutive_frames: int = 5,
        max_age: int = 30,
        match_distance: float = 24.0,
        thresholds: Dict[str, float] = None
    ):
        """
        Initialize secondary object detector.
        
        Args:
            min_consecutive_frames: Sightings required before a region is reported as detected
            max_age: Frames a track may go unseen before eviction
            match_distance: Max centre distance (pixels) to continue a track
            thresholds: Optional dict overriding THRESHOLDS
        """
        self.min_consecutive_frames = min_consecutive_frames
        
        self.thresholds = self.THRESHOLDS.copy()
        if thresholds:
            self.thresholds.update(thresholds)
        
        self._faces = RegionTracker(RegionKind.FACE, match_distance, max_age)
        self._devices = RegionTracker(RegionKind.DEVICE, match_distance, max_age)
        self._previous_gray: Optional[np.ndarray] = None
        self._frame_index = 0
        self._disposed = False
    
    def detect_objects(
        self,
        frame: np.ndarray,
        primary_face_bounds: Optional[BoundingBox] = None
    ) -> ObjectDetectionResult:
        """
        Detect and track secondary faces and device-like objects.
        
        Args:
            frame: BGR image
            primary_face_bounds: Bounding box of the monitored face, excluded from face search
            
        Returns:
            ObjectDetectionResult with the regions seen in this frame
            
        Raises:
            InvalidFrameError: if the frame is missing or not an image
        """
        frame = ensure_frame(frame)
        
        if self._disposed:
            return ObjectDetectionResult([], [], self._frame_index)
        
        self._frame_index += 1
        gray = to_luma(frame)
        
        faces = []
        for box, confidence in self._find_faces(frame, gray, primary_face_bounds):
            track = self._faces.update(box, confidence, self._frame_index)
            faces.append(self._snapshot(track))
        
        devices = []
        for box, confidence, motion, highlight in self._find_devices(gray):
            track = self._devices.update(box, confidence, self._frame_index, motion, highlight)
            devices.append(self._snapshot(track))
        
        self._faces.evict(self._frame_index)
        self._devices.evict(self._frame_index)
        self._previous_gray = gray
        
        return ObjectDetectionResult(
            secondary_faces=faces,
            device_like_objects=devices,
            frame_index=self._frame_index
        )
    
    def _snapshot(self, track: DetectedRegion) -> ObjectDetection:
        return ObjectDetection(
            track_id=track.track_id,
            kind=track.kind,
            bounding_box=track.bounding_box,
            confidence=track.confidence,
            frames_seen=track.consecutive_frames_seen,
            detected=track.consecutive_frames_seen >= self.min_consecutive_frames
        )
    
    # ============== Faces ==============
    
    @staticmethod
    def skin_mask(frame: np.ndarray) -> np.ndarray:
        """RGB skin heuristic over a BGR frame"""
        if frame.ndim != 3:
            return np.zeros(frame.shape[:2], dtype=bool)
        
        pixels = frame[..., :3].astype(np.int16)
        b, g, r = pixels[..., 0], pixels[..., 1], pixels[..., 2]
        spread = pixels.max(axis=2) - pixels.min(axis=2)
        
        return (
            (r > 95) & (g > 40) & (b > 20)
            & (spread > 15)
            & (np.abs(r - g) > 15)
            & (r > g) & (r > b)
        )
    
    def _find_faces(
        self,
        frame: np.ndarray,
        gray: np.ndarray,
        primary_face_bounds: Optional[BoundingBox]
    ) -> List[Tuple[BoundingBox, float]]:
        height, width = gray.shape
        frame_area = float(width * height)
        stride = self.GRID_STRIDE
        
        coarse = self.skin_mask(frame)[::stride, ::stride].astype(np.uint8)
        if not coarse.any():
            return []
        
        count, _, stats, _ = cv2.connectedComponentsWithStats(coarse, connectivity=4)
        
        candidates = []
        for label in range(1, count):
            pixel_count = stats[label, cv2.CC_STAT_AREA] * stride * stride
            if not (
                self.thresholds["min_area_fraction"] * frame_area
                <= pixel_count
                <= self.thresholds["max_area_fraction"] * frame_area
            ):
                continue
            
            x = stats[label, cv2.CC_STAT_LEFT] * stride
            y = stats[label, cv2.CC_STAT_TOP] * stride
            box = BoundingBox(
                float(x),
                float(y),
                float(min(stats[label, cv2.CC_STAT_WIDTH] * stride, width - x)),
                float(min(stats[label, cv2.CC_STAT_HEIGHT] * stride, height - y))
            )
            
            if (
                primary_face_bounds is not None
                and box.overlap_fraction(primary_face_bounds) > self.thresholds["primary_overlap"]
            ):
                continue
            
            confidence = self.face_confidence(gray, box)
            if confidence >= self.thresholds["face_confidence"]:
                candidates.append((box, confidence))
        
        return candidates
    
    def face_confidence(self, gray: np.ndarray, box: BoundingBox) -> float:
        """
        Base 0.3, plus dark regions where eyes (0.2 each) and a mouth (0.15)
        should be, plus 0.15 for face-like proportions.
        """
        confidence = 0.3
        
        eye_y = box.y + box.height * 0.2
        eye_h = box.height * 0.3
        eye_w = box.width * 0.15
        
        if self._has_dark_region(gray, box.x + box.width * 0.25, eye_y, eye_w, eye_h):
            confidence += 0.2
        if self._has_dark_region(gray, box.x + box.width * 0.75, eye_y, eye_w, eye_h):
            confidence += 0.2
        
        if self._has_dark_region(
            gray,
            box.x + box.width * 0.4,
            box.y + box.height * 0.7,
            box.width * 0.2,
            box.height * 0.2
        ):
            confidence += 0.15
        
        if 0.6 <= box.aspect_ratio <= 1.2:
            confidence += 0.15
        
        return min(1.0, confidence)
    
    def _has_dark_region(self, gray: np.ndarray, x: float, y: float, w: float, h: float) -> bool:
        patch = self._crop(gray, x, y, w, h)
        if patch.size == 0:
            return False
        return float(np.mean(patch < self.DARK_LUMA)) > self.DARK_FRACTION
    
    @staticmethod
    def _crop(image: np.ndarray, x: float, y: float, w: float, h: float) -> np.ndarray:
        height, width = image.shape[:2]
        x0, y0 = max(0, int(x)), max(0, int(y))
        x1, y1 = min(width, int(x + w)), min(height, int(y + h))
        return image[y0:y1, x0:x1]
    
    # ============== Devices ==============
    
    def _edge_map(self, gray: np.ndarray) -> np.ndarray:
        gray = gray.astype(np.float32)
        magnitude = cv2.magnitude(
            cv2.Sobel(gray, cv2.CV_32F, 1, 0, ksize=3),
            cv2.Sobel(gray, cv2.CV_32F, 0, 1, ksize=3)
        )
        edges = np.zeros(gray.shape, dtype=np.uint8)
        edges[1:-1, 1:-1] = magnitude[1:-1, 1:-1] > self.thresholds["edge_magnitude"]
        return edges
    
    def _sides_covered(self, edges: np.ndarray, x: int, y: int, w: int, h: int) -> bool:
        """Each side of the rectangle must be mostly edge pixels"""
        sides = (
            edges[y, x:x + w],
            edges[y + h - 1, x:x + w],
            edges[y:y + h, x],
            edges[y:y + h, x + w - 1]
        )
        coverage = self.thresholds["side_coverage"]
        return all(side.size > 0 and side.mean() > coverage for side in sides)
    
    def _find_devices(self, gray: np.ndarray) -> List[Tuple[BoundingBox, float, float, float]]:
        height, width = gray.shape
        frame_area = float(width * height)
        edges = self._edge_map(gray)
        
        contours, _ = cv2.findContours(edges, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        
        candidates = []
        for contour in contours:
            x, y, w, h = cv2.boundingRect(contour)
            if w < 3 or h < 3:
                continue
            
            box = BoundingBox(float(x), float(y), float(w), float(h))
            area_fraction = box.area / frame_area
            if not (
                self.thresholds["min_area_fraction"]
                <= area_fraction
                <= self.thresholds["max_area_fraction"]
            ):
                continue
            if not (
                self.thresholds["device_aspect_min"]
                <= box.aspect_ratio
                <= self.thresholds["device_aspect_max"]
            ):
                continue
            if not self._sides_covered(edges, x, y, w, h):
                continue
            
            motion = self.motion_score(gray, box)
            highlight = self.highlight_score(gray, box)
            confidence = self.device_confidence(box, motion, highlight)
            
            if confidence >= self.thresholds["device_confidence"]:
                candidates.append((box, confidence, motion, highlight))
        
        return candidates
    
    def motion_score(self, gray: np.ndarray, box: BoundingBox) -> float:
        """Mean absolute luminance change against the previous frame, in [0, 1]"""
        if self._previous_gray is None or self._previous_gray.shape != gray.shape:
            return 0.0
        current = self._crop(gray, box.x, box.y, box.width, box.height).astype(np.int16)
        previous = self._crop(self._previous_gray, box.x, box.y, box.width, box.height).astype(np.int16)
        if current.size == 0:
            return 0.0
        return float(np.mean(np.abs(current - previous)) / 255.0)
    
    def highlight_score(self, gray: np.ndarray, box: BoundingBox) -> float:
        """Share of very bright pixels (screen glare)"""
        patch = self._crop(gray, box.x, box.y, box.width, box.height)
        if patch.size == 0:
            return 0.0
        return float(np.mean(patch > self.HIGHLIGHT_LUMA))
    
    def device_confidence(self, box: BoundingBox, motion: float, highlight: float) -> float:
        """
        Additive score: 0.2 for a rectangle, 0.3 for phone proportions,
        0.2 for motion, 0.3 for glare.
        """
        confidence = 0.2
        if 0.5 <= box.aspect_ratio <= 0.7:
            confidence += 0.3
        if motion > self.thresholds["motion"]:
            confidence += 0.2
        if highlight > self.thresholds["highlight"]:
            confidence += 0.3
        return min(1.0, confidence)
    
    # ============== State ==============
    
    def get_tracked_regions(self) -> Dict[str, List[DetectedRegion]]:
        return {
            "faces": self._faces.tracks,
            "devices": self._devices.tracks
        }
    
    def get_stats(self) -> Dict[str, Any]:
        return {
            "frame_index": self._frame_index,
            "tracked_faces": len(self._faces),
            "tracked_devices": len(self._devices)
        }
    
    def reset(self):
        """Clear all tracks and the previous frame used for motion scoring"""
        self._faces.reset()
        self._devices.reset()
        self._previous_gray = None
        self._frame_index = 0
    
    def dispose(self):
        """Reset and ignore further frames"""
        self.reset()
        self._disposed = True
