import logging
import math
import random
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field, replace
from functools import cached_property

import drawsvg as draw
from drawsvg.elements import DrawingBasicElement
import numpy as np
from PIL import Image, ImageDraw, ImageFont
from shapely import affinity
from shapely.geometry import LineString, Point, Polygon, box
from shapely.ops import unary_union
from shapely.prepared import prep
from shapely.validation import make_valid


logger = logging.getLogger(__name__)


# ============================================================================
# CONSTANTS & OPTIONS
# ============================================================================

ENDPOINT_THRESHOLD = 3     # endpoints closer than this are the same point
PAD_PADDING = 3            # extra gap between two neighbouring pad circles
SHORTEN_PADDING = 1        # gap between a pad circle and its trimmed line
FORK_RADIUS_FACTOR = 1.2   # forks draw slightly larger than pads
DEFAULT_RADIAL_RADIUS = 100
MASK_THRESHOLD = 128       # red channel below this = inside
HEADINGS = (0, 45, 90, 135)

STYLES = ('grid', 'organic')
GRADIENT_TYPES = ('none', 'linear', 'radial')

DEFAULT_OPTIONS = {
    'density': 20,            # grid spacing / organic seed spacing
    'line_length_min': 20,
    'line_length_max': 150,
    'line_length': None,      # average length; overrides the min/max window
    'line_thickness': 2,
    'circle_radius': 4,
    'style': 'organic',
    'line_color': '#00ff00',
    'gradient_type': 'none',
    'gradient_color': None,   # None = same as line_color
    'gradient_start': None,   # (x, y) in output space
    'gradient_end': None,
    'pattern_scale': 1,
    'seed': None,
}


class PatternError(Exception):
    """Base class for generation failures the caller should report."""


class EmptyInput(PatternError):
    """No region or shapes were supplied."""


class NoValidRegion(PatternError):
    """The region has no usable area to fill."""


def make_options(options=None, **overrides):
    """Merge caller options over DEFAULT_OPTIONS and validate the result.

    Args:
        options: dict of option values (may be None).
        **overrides: individual option values, applied after `options`.

    Returns:
        A new dict containing every recognized option.

    Raises:
        ValueError: unknown keys or out-of-range values.
    """
    merged = dict(DEFAULT_OPTIONS)
    for source in (options or {}, overrides):
        for key, value in source.items():
            if key not in DEFAULT_OPTIONS:
                raise ValueError('Unknown option: {!r}'.format(key))
            merged[key] = value

    if merged['density'] <= 0:
        raise ValueError('density must be positive, got {}'.format(merged['density']))
    if merged['pattern_scale'] <= 0:
        raise ValueError('pattern_scale must be positive, got {}'.format(merged['pattern_scale']))
    if merged['line_thickness'] <= 0:
        raise ValueError('line_thickness must be positive, got {}'.format(merged['line_thickness']))
    if merged['circle_radius'] < 0:
        raise ValueError('circle_radius must not be negative, got {}'.format(merged['circle_radius']))
    if merged['line_length'] is not None and merged['line_length'] <= 0:
        raise ValueError('line_length must be positive, got {}'.format(merged['line_length']))
    if merged['line_length_min'] <= 0 or merged['line_length_min'] > merged['line_length_max']:
        raise ValueError('Invalid line length window: {} .. {}'.format(
            merged['line_length_min'], merged['line_length_max']))
    if merged['style'] not in STYLES:
        raise ValueError('Unknown style: {!r}'.format(merged['style']))
    if merged['gradient_type'] not in GRADIENT_TYPES:
        raise ValueError('Unknown gradient type: {!r}'.format(merged['gradient_type']))

    if merged['gradient_start'] is not None:
        merged['gradient_start'] = _as_xy(merged['gradient_start'])
    if merged['gradient_end'] is not None:
        merged['gradient_end'] = _as_xy(merged['gradient_end'])
    return merged


# ============================================================================
# DATA MODEL
# ============================================================================

@dataclass
class Segment:
    """A polyline of two or more (x, y) points.

    `angle` is the initial heading in degrees and `length` the nominal length
    the candidate was generated with (the sort key for placement).
    """
    points: list
    angle: float
    length: float

    @property
    def start(self):
        return self.points[0]

    @property
    def end(self):
        return self.points[-1]

    @property
    def endpoints(self):
        return (self.points[0], self.points[-1])

    @property
    def is_bent(self):
        return len(self.points) > 2

    @property
    def path_length(self):
        return sum(_distance(a, b) for a, b in zip(self.points, self.points[1:]))

    @cached_property
    def line(self):
        return LineString(self.points)

    @cached_property
    def bbox(self):
        xs = [p[0] for p in self.points]
        ys = [p[1] for p in self.points]
        return (min(xs), min(ys), max(xs), max(ys))


@dataclass
class Fork:
    """Two or more segment endpoints meeting at one place."""
    point: tuple
    segments: list        # indices into the placed segment list
    key: tuple            # rounded grid key the endpoints share
    endpoint_count: int

    @property
    def type(self):
        return 'cross' if self.endpoint_count > 2 else 't-junction'


@dataclass
class Pattern:
    segments: list
    circles: list
    forks: list
    line_thickness: float
    circle_radius: float
    line_color: str = DEFAULT_OPTIONS['line_color']
    gradient_type: str = 'none'
    gradient_color: str = None
    gradient_start: tuple = None
    gradient_end: tuple = None
    stats: dict = field(default_factory=dict)


def set_gradient_points(pattern, start, end):
    """Move the gradient handles of an already generated pattern in place."""
    pattern.gradient_start = _as_xy(start) if start is not None else None
    pattern.gradient_end = _as_xy(end) if end is not None else None
    return pattern


# ============================================================================
# VECTOR HELPERS
# ============================================================================

def _as_xy(p):
    """Accept (x, y) sequences or {'x': .., 'y': ..} mappings."""
    if isinstance(p, dict):
        return (float(p['x']), float(p['y']))
    return (float(p[0]), float(p[1]))


def _is_point(obj):
    if isinstance(obj, dict):
        return 'x' in obj and 'y' in obj and 'type' not in obj
    if isinstance(obj, (list, tuple)) and len(obj) == 2:
        return all(isinstance(v, (int, float, np.number)) for v in obj)
    return False


def _distance(a, b):
    return math.hypot(b[0] - a[0], b[1] - a[1])


def _is_shared(p, endpoints, threshold):
    return any(_distance(p, q) < threshold for q in endpoints)


def _bbox_gap(a, b):
    """Distance between two axis-aligned boxes (0 when they overlap)."""
    dx = max(a[0] - b[2], b[0] - a[2], 0.0)
    dy = max(a[1] - b[3], b[1] - a[3], 0.0)
    return math.hypot(dx, dy)


def _intersection_points(geom):
    """Flatten a shapely intersection result into a list of (x, y) points."""
    if geom.is_empty:
        return []
    if geom.geom_type == 'Point':
        return [(geom.x, geom.y)]
    if geom.geom_type == 'LineString':
        return list(geom.coords)
    if geom.geom_type in ('MultiPoint', 'MultiLineString', 'GeometryCollection'):
        result = []
        for part in geom.geoms:
            result.extend(_intersection_points(part))
        return result
    return []


# ============================================================================
# MASKING SYSTEM
# ============================================================================

class ContainmentPredicate:
    """Answers "is this point inside the region?" in mask-native coordinates."""

    def contains(self, x, y):
        raise NotImplementedError

    def contains_point(self, p):
        return self.contains(p[0], p[1])

    @property
    def bounds(self):
        """(min_x, min_y, max_x, max_y) of the inside area, or None when empty."""
        raise NotImplementedError

    def is_empty(self):
        return self.bounds is None


class BitmapMask(ContainmentPredicate):
    """Pixel mask: a pixel is inside when its red channel is below `threshold`.

    Accepts a Pillow image, a numpy array (H x W or H x W x C) or nested row
    lists. Boolean arrays are taken as-is (True = inside).
    """

    def __init__(self, pixels, threshold=MASK_THRESHOLD):
        if isinstance(pixels, Image.Image):
            if pixels.mode in ('1', 'L', 'I', 'F'):
                values = np.asarray(pixels.convert('L'))
            else:
                values = np.asarray(pixels.convert('RGB'))[:, :, 0]
        else:
            values = np.asarray(pixels)
            if values.ndim == 3:
                values = values[:, :, 0]
        if values.ndim != 2:
            raise ValueError('Bitmap mask must be two-dimensional, got shape {}'.format(values.shape))

        if values.dtype == bool:
            self.inside = values.copy()
        else:
            self.inside = values < threshold
        self.height, self.width = self.inside.shape

        rows, cols = np.nonzero(self.inside)
        if rows.size == 0:
            self._bounds = None
        else:
            self._bounds = (float(cols.min()), float(rows.min()),
                            float(cols.max() + 1), float(rows.max() + 1))

    def contains(self, x, y):
        ix = math.floor(x)
        iy = math.floor(y)
        if ix < 0 or iy < 0 or ix >= self.width or iy >= self.height:
            return False
        return bool(self.inside[iy, ix])

    @property
    def bounds(self):
        return self._bounds

    def inside_count(self):
        return int(self.inside.sum())


def _repair_outline(geometry):
    """Make a self-crossing outline valid, keeping every enclosed lobe.

    make_valid() can hand back a GeometryCollection with stray lines or
    points; only the areal parts count as region.
    """
    if geometry.is_valid:
        return geometry
    fixed = make_valid(geometry)
    if fixed.geom_type == 'GeometryCollection':
        parts = [g for g in fixed.geoms if g.geom_type in ('Polygon', 'MultiPolygon')]
        fixed = unary_union(parts) if parts else Polygon()
    return fixed


class PolygonMask(ContainmentPredicate):
    """Containment against a polygon (or any areal shapely geometry)."""

    def __init__(self, points_or_geometry):
        if hasattr(points_or_geometry, 'geom_type'):
            geometry = points_or_geometry
        else:
            geometry = _polygon_from_points(points_or_geometry)
        if geometry is not None:
            geometry = _repair_outline(geometry)
        if geometry is None or geometry.is_empty or geometry.area <= 0:
            geometry = None
        self.geometry = geometry
        self._prepared = prep(geometry) if geometry is not None else None

    def contains(self, x, y):
        if self._prepared is None:
            return False
        return self._prepared.contains(Point(x, y))

    @property
    def bounds(self):
        if self.geometry is None:
            return None
        return tuple(self.geometry.bounds)


class ShapeMask(PolygonMask):
    """Several shapes OR-combined: a point is inside if any shape holds it.

    Each shape is a point list or a dict:
        rectangle: x, y, width, height
        ellipse:   cx, cy, rx, ry
        freehand / polygon: points
    """

    def __init__(self, shapes):
        polygons = []
        for shape in shapes:
            poly = shape_to_polygon(shape)
            if poly is not None and not poly.is_empty:
                polygons.append(_repair_outline(poly))
        geometry = unary_union(polygons) if polygons else None
        super().__init__(geometry if geometry is not None else Polygon())
        self.shape_count = len(polygons)


def _polygon_from_points(points):
    coords = [_as_xy(p) for p in points]
    if len(coords) < 3:
        return None
    return Polygon(coords)


def shape_to_polygon(shape):
    """Convert a shape (point list or shape dict) to a shapely Polygon, or None."""
    if not isinstance(shape, dict):
        return _polygon_from_points(shape)

    stype = shape.get('type')
    if stype == 'rectangle':
        x0, y0 = shape['x'], shape['y']
        x1 = x0 + shape['width']
        y1 = y0 + shape['height']
        x0, x1 = min(x0, x1), max(x0, x1)
        y0, y1 = min(y0, y1), max(y0, y1)
        return box(x0, y0, max(x1, x0 + 1), max(y1, y0 + 1))
    elif stype == 'ellipse':
        cx, cy = shape['cx'], shape['cy']
        rx = max(1, abs(shape['rx']))
        ry = max(1, abs(shape['ry']))
        circle = Point(cx, cy).buffer(1.0)
        return affinity.scale(circle, xfact=rx, yfact=ry, origin=(cx, cy))
    elif stype in ('freehand', 'polygon'):
        return _polygon_from_points(shape.get('points', []))
    elif stype == 'text':
        raise ValueError("Text shapes need a raster mask; use rasterize_shapes()")
    raise ValueError('Unknown shape type: {!r}'.format(stype))


def _load_font(shape):
    font_size = shape.get('font_size', 72)
    if shape.get('font_path'):
        return ImageFont.truetype(shape['font_path'], font_size)
    return ImageFont.load_default(size=font_size)


def _is_text(shape):
    return isinstance(shape, dict) and shape.get('type') == 'text'


def _shape_extent(shape):
    """(max_x, max_y) a raster canvas needs to hold `shape`, or None."""
    if _is_text(shape):
        if not shape.get('text'):
            return None
        font = _load_font(shape)
        measure = ImageDraw.Draw(Image.new('L', (1, 1)))
        left, top, right, bottom = measure.textbbox((0, 0), shape['text'], font=font)
        return (shape['x'] + (right - left) / 2.0, shape['y'] + (bottom - top) / 2.0)
    poly = shape_to_polygon(shape)
    if poly is None or poly.is_empty:
        return None
    return (poly.bounds[2], poly.bounds[3])


def rasterize_shape_list(shapes):
    """Rasterize a shape list (text included) on a canvas just large enough for it."""
    extents = [e for e in (_shape_extent(s) for s in shapes) if e is not None]
    if not extents:
        raise EmptyInput('No drawable shapes supplied')
    width = int(math.ceil(max(e[0] for e in extents))) + 2
    height = int(math.ceil(max(e[1] for e in extents))) + 2
    return rasterize_shapes(max(width, 1), max(height, 1), shapes)


def rasterize_shapes(width, height, shapes):
    """Draw shapes black-on-white into a Pillow 'L' image for BitmapMask.

    Supports the shape dicts of ShapeMask plus text:
        text: text, x, y (centre), font_size, optional font_path

    Raises:
        EmptyInput: nothing in `shapes` could be drawn.
    """
    image = Image.new('L', (int(width), int(height)), 255)
    canvas = ImageDraw.Draw(image)
    drawn = 0

    for shape in shapes:
        stype = shape.get('type') if isinstance(shape, dict) else 'polygon'
        if stype == 'rectangle':
            x0, y0 = shape['x'], shape['y']
            x1 = x0 + max(1, shape['width'])
            y1 = y0 + max(1, shape['height'])
            canvas.rectangle([x0, y0, x1 - 1, y1 - 1], fill=0)
        elif stype == 'ellipse':
            rx = max(1, shape['rx'])
            ry = max(1, shape['ry'])
            canvas.ellipse([shape['cx'] - rx, shape['cy'] - ry,
                            shape['cx'] + rx, shape['cy'] + ry], fill=0)
        elif stype in ('freehand', 'polygon'):
            points = shape.get('points', []) if isinstance(shape, dict) else shape
            if len(points) < 3:
                continue
            canvas.polygon([_as_xy(p) for p in points], fill=0)
        elif stype == 'text':
            text = shape.get('text', '')
            if not text:
                continue
            font = _load_font(shape)
            left, top, right, bottom = canvas.textbbox((0, 0), text, font=font)
            origin = (shape['x'] - (left + right) / 2.0,
                      shape['y'] - (top + bottom) / 2.0)
            canvas.text(origin, text, fill=0, font=font)
        else:
            raise ValueError('Unknown shape type: {!r}'.format(stype))
        drawn += 1

    if not drawn:
        raise EmptyInput('No drawable shapes supplied')
    return image


def as_mask(region):
    """Coerce a region description into a ContainmentPredicate.

    Accepted: a ContainmentPredicate, a Pillow image or numpy array (bitmap),
    a single polygon as a point list, or a list of shapes. Shape lists that
    include text are rasterized into a BitmapMask.

    Raises:
        EmptyInput: region is None or an empty list.
    """
    if region is None:
        raise EmptyInput('No region supplied')
    if isinstance(region, ContainmentPredicate):
        return region
    if isinstance(region, (Image.Image, np.ndarray)):
        return BitmapMask(region)
    if hasattr(region, 'geom_type'):
        return PolygonMask(region)

    shapes = list(region)
    if not shapes:
        raise EmptyInput('No shapes supplied')
    if _is_point(shapes[0]):
        return PolygonMask(shapes)
    if any(_is_text(s) for s in shapes):
        return BitmapMask(rasterize_shape_list(shapes))
    return ShapeMask(shapes)


# ============================================================================
# CANDIDATE GENERATION
# ============================================================================

def create_segment(x, y, angle, length):
    """Straight candidate from (x, y) heading `angle` degrees."""
    rad = math.radians(angle)
    end = (x + math.cos(rad) * length, y + math.sin(rad) * length)
    return Segment(points=[(x, y), end], angle=angle, length=length)


def create_bent_segment(x, y, angle, length, num_turns, rng):
    """Polyline candidate with `num_turns` random +/-45 degree turns.

    Each leg is the even split of `length` randomized by +/-20%; `length`
    stays the nominal length of the whole candidate.
    """
    points = [(x, y)]
    heading = angle
    leg = length / (num_turns + 1)
    for i in range(num_turns + 1):
        rad = math.radians(heading)
        step = leg * rng.uniform(0.8, 1.2)
        x += math.cos(rad) * step
        y += math.sin(rad) * step
        points.append((x, y))
        if i < num_turns:
            heading = (heading + rng.choice((-45, 45))) % 360
    return Segment(points=points, angle=angle, length=length)


def create_candidate_segments(bounds, spacing, style, rng,
                              length_min=None, length_max=None, avg_length=None):
    """Generate raw candidates inside a bounding box (no checks yet).

    Args:
        bounds: (x, y, width, height) in generation space.
        spacing: grid step ('grid') or seed spacing ('organic').
        style: 'grid' or 'organic'.
        rng: random.Random used for every draw.
        length_min, length_max: uniform length window.
        avg_length: if set, lengths are 70%..130% of it instead.
    """
    bx, by, bw, bh = bounds

    def draw_length():
        if avg_length is not None:
            return avg_length * rng.uniform(0.7, 1.3)
        return rng.uniform(length_min, length_max)

    segments = []
    if style == 'grid':
        cols = int(math.ceil(bw / spacing)) if bw > 0 else 0
        rows = int(math.ceil(bh / spacing)) if bh > 0 else 0
        for i in range(cols):
            x = bx + i * spacing
            for j in range(rows):
                y = by + j * spacing
                angle = rng.choice(HEADINGS)
                segments.append(create_segment(x, y, angle, draw_length()))
    else:
        count = int((bw * bh) / (spacing * spacing * 0.5))
        for _ in range(count):
            x = bx + rng.random() * bw
            y = by + rng.random() * bh
            angle = rng.choice(HEADINGS)
            length = draw_length()
            num_turns = rng.randint(0, 2)
            segments.append(create_bent_segment(x, y, angle, length, num_turns, rng))
    return segments


# ============================================================================
# CONTAINMENT FILTER
# ============================================================================

def sample_points(segment):
    """Points tested against the mask: ends plus interior vertices (or the midpoint)."""
    if segment.is_bent:
        return list(segment.points)
    (x0, y0), (x1, y1) = segment.start, segment.end
    return [segment.start, segment.end, ((x0 + x1) / 2.0, (y0 + y1) / 2.0)]


def candidate_inside(segment, mask, scale=1):
    for x, y in sample_points(segment):
        if not mask.contains_point((x * scale, y * scale)):
            return False
    return True


def filter_candidates(candidates, mask, scale=1):
    """Keep candidates whose sampled points all fall inside `mask`.

    Candidate coordinates are in generation space; they are multiplied by
    `scale` to reach mask coordinates.
    """
    return [seg for seg in candidates if candidate_inside(seg, mask, scale)]


# ============================================================================
# GREEDY PLACEMENT
# ============================================================================

def pad_clearance(line_thickness, circle_radius):
    """Minimum distance between a non-shared endpoint and another pad or path."""
    return 2 * circle_radius + line_thickness + PAD_PADDING


def path_spacing(density, line_thickness, circle_radius):
    """Minimum distance allowed between two placed polylines."""
    min_spacing = max(density * 0.3, line_thickness + circle_radius)
    return min_spacing + line_thickness / 2.0


def check_pair(candidate, placed, spacing, clearance, threshold=ENDPOINT_THRESHOLD):
    """Test a candidate against one placed segment.

    Returns None when the pair is compatible, otherwise the name of the
    first rule it breaks: 'pad-clearance', 'endpoint-clearance', 'crossing'
    or 'spacing'.
    """
    # Endpoints either coincide (future fork) or keep room for two pads
    for a in candidate.endpoints:
        for b in placed.endpoints:
            dist = _distance(a, b)
            if threshold <= dist < clearance:
                return 'pad-clearance'

    cand_line = candidate.line
    placed_line = placed.line

    for p in placed.endpoints:
        if not _is_shared(p, candidate.endpoints, threshold):
            if Point(p).distance(cand_line) < clearance:
                return 'endpoint-clearance'
    for p in candidate.endpoints:
        if not _is_shared(p, placed.endpoints, threshold):
            if Point(p).distance(placed_line) < clearance:
                return 'endpoint-clearance'

    # Crossings are only allowed at declared endpoints
    all_endpoints = candidate.endpoints + placed.endpoints
    for x in _intersection_points(cand_line.intersection(placed_line)):
        if not _is_shared(x, all_endpoints, threshold):
            return 'crossing'

    # Applies to shared-endpoint pairs too
    if cand_line.distance(placed_line) < spacing:
        return 'spacing'
    return None


class PlacementState:
    """Accepted segments of a single generation call.

    Placed segments are indexed in a uniform grid by bounding box. Only
    segments within reach of a candidate can break a rule, so the grid
    narrows the pairwise scan without changing which candidates win.
    """

    def __init__(self, spacing, clearance, threshold=ENDPOINT_THRESHOLD):
        self.spacing = spacing
        self.clearance = clearance
        self.threshold = threshold
        self.reach = max(spacing, clearance, threshold)
        self.cell_size = max(self.reach, 1.0)
        self.segments = []
        self.rejections = Counter()
        self._cells = defaultdict(list)

    def _cells_for(self, bbox, pad=0.0):
        cs = self.cell_size
        x0 = int(math.floor((bbox[0] - pad) / cs))
        y0 = int(math.floor((bbox[1] - pad) / cs))
        x1 = int(math.floor((bbox[2] + pad) / cs))
        y1 = int(math.floor((bbox[3] + pad) / cs))
        for cx in range(x0, x1 + 1):
            for cy in range(y0, y1 + 1):
                yield (cx, cy)

    def nearby(self, segment):
        """Indices of placed segments that could conflict with `segment`, in placement order."""
        found = set()
        for cell in self._cells_for(segment.bbox, pad=self.reach):
            found.update(self._cells.get(cell, ()))
        return [i for i in sorted(found)
                if _bbox_gap(segment.bbox, self.segments[i].bbox) < self.reach]

    def check(self, candidate):
        for i in self.nearby(candidate):
            reason = check_pair(candidate, self.segments[i], self.spacing,
                                self.clearance, self.threshold)
            if reason is not None:
                return reason
        return None

    def add(self, segment):
        index = len(self.segments)
        self.segments.append(segment)
        for cell in self._cells_for(segment.bbox):
            self._cells[cell].append(index)

    def try_place(self, candidate):
        reason = self.check(candidate)
        if reason is not None:
            self.rejections[reason] += 1
            return False
        self.add(candidate)
        return True


def can_place_segment(candidate, placed_segments, spacing, clearance,
                      threshold=ENDPOINT_THRESHOLD):
    """True if `candidate` is compatible with every segment in `placed_segments`."""
    for placed in placed_segments:
        if check_pair(candidate, placed, spacing, clearance, threshold) is not None:
            return False
    return True


def place_segments(candidates, spacing, clearance, threshold=ENDPOINT_THRESHOLD,
                   length_window=None, progress_callback=None):
    """Greedy single pass, longest first. Returns the PlacementState.

    Ties keep their input order. A rejected candidate is never retried.

    Args:
        length_window: optional (min, max); candidates outside are skipped.
        progress_callback: fn(current, total) called once per candidate.
    """
    state = PlacementState(spacing, clearance, threshold)
    ordered = sorted(candidates, key=lambda seg: seg.length, reverse=True)
    total = len(ordered)
    for n, candidate in enumerate(ordered, 1):
        if length_window is not None and not (
                length_window[0] <= candidate.length <= length_window[1]):
            state.rejections['length'] += 1
        else:
            state.try_place(candidate)
        if progress_callback:
            progress_callback(n, total)
    return state


# ============================================================================
# FORKS & PADS
# ============================================================================

def point_key(point, threshold=ENDPOINT_THRESHOLD):
    """Round a point to the threshold grid, halves rounding up."""
    return (math.floor(point[0] / threshold + 0.5) * threshold,
            math.floor(point[1] / threshold + 0.5) * threshold)


def find_forks(segments, threshold=ENDPOINT_THRESHOLD):
    """Group coincident endpoints of placed segments into forks.

    The fork point is the mean of the contributing endpoints, not the
    rounded key.
    """
    groups = {}
    for index, seg in enumerate(segments):
        for endpoint in seg.endpoints:
            groups.setdefault(point_key(endpoint, threshold), []).append((index, endpoint))

    forks = []
    for key, members in groups.items():
        if len(members) < 2:
            continue
        mean_x = sum(p[0] for _, p in members) / len(members)
        mean_y = sum(p[1] for _, p in members) / len(members)
        seg_indices = sorted({index for index, _ in members})
        forks.append(Fork(point=(mean_x, mean_y), segments=seg_indices,
                          key=key, endpoint_count=len(members)))
    return forks


def is_fork_endpoint(point, forks, threshold=ENDPOINT_THRESHOLD):
    key = point_key(point, threshold)
    for fork in forks:
        if fork.key == key or _distance(point, fork.point) < threshold:
            return True
    return False


def extract_pads(segments, forks, threshold=ENDPOINT_THRESHOLD):
    """Endpoints that do not belong to a fork, at their unshortened positions."""
    pads = []
    for seg in segments:
        for endpoint in seg.endpoints:
            if not is_fork_endpoint(endpoint, forks, threshold):
                pads.append(endpoint)
    return pads


# ============================================================================
# ENDPOINT SHORTENING
# ============================================================================

def _pull_toward(points, index, neighbour, amount):
    """Move points[index] toward points[neighbour] by at most `amount`."""
    x0, y0 = points[index]
    x1, y1 = points[neighbour]
    dx, dy = x1 - x0, y1 - y0
    length = math.hypot(dx, dy)
    if length <= 0:
        return
    step = min(amount, length)
    points[index] = (x0 + dx * step / length, y0 + dy * step / length)


def shorten_segment(segment, circle_radius, trim_start=True, trim_end=True):
    """Trim pad ends inward by circle_radius + SHORTEN_PADDING along their terminal legs."""
    points = list(segment.points)
    amount = circle_radius + SHORTEN_PADDING
    if trim_start and len(points) > 1:
        _pull_toward(points, 0, 1, amount)
    if trim_end and len(points) > 1:
        _pull_toward(points, len(points) - 1, len(points) - 2, amount)
    return replace(segment, points=points)


def shorten_segments(segments, forks, circle_radius, threshold=ENDPOINT_THRESHOLD):
    """Shortened copies of `segments`; fork ends keep their coordinates."""
    result = []
    for seg in segments:
        result.append(shorten_segment(
            seg, circle_radius,
            trim_start=not is_fork_endpoint(seg.start, forks, threshold),
            trim_end=not is_fork_endpoint(seg.end, forks, threshold)))
    return result


# ============================================================================
# RESCALE
# ============================================================================

def rescale_point(p, scale):
    return (p[0] * scale, p[1] * scale)


def rescale_pattern(pattern, scale):
    """Map a generation-space pattern to output space.

    Every coordinate, the line thickness and the pad radius are multiplied
    by `scale`. Gradient handles are already in output space.
    """
    if scale == 1:
        return pattern
    segments = [replace(seg, points=[rescale_point(p, scale) for p in seg.points],
                        length=seg.length * scale)
                for seg in pattern.segments]
    circles = [rescale_point(p, scale) for p in pattern.circles]
    forks = [replace(fork, point=rescale_point(fork.point, scale)) for fork in pattern.forks]
    return replace(pattern, segments=segments, circles=circles, forks=forks,
                   line_thickness=pattern.line_thickness * scale,
                   circle_radius=pattern.circle_radius * scale)


# ============================================================================
# GENERATION
# ============================================================================

def generate(region, options=None, progress_callback=None, **overrides):
    """Fill `region` with a circuit pattern.

    Args:
        region: anything as_mask() accepts.
        options: option dict (see DEFAULT_OPTIONS); keyword overrides win.
        progress_callback: fn(current, total) during placement.

    Returns:
        A new Pattern in output space.

    Raises:
        EmptyInput: nothing was supplied.
        NoValidRegion: the region has no inside area.
    """
    opts = make_options(options, **overrides)
    mask = as_mask(region)
    if mask.is_empty():
        raise NoValidRegion('Region has no usable area')

    scale = opts['pattern_scale']
    thickness = opts['line_thickness']
    radius = opts['circle_radius']
    rng = random.Random(opts['seed'])

    x0, y0, x1, y1 = mask.bounds
    bounds = (x0 / scale, y0 / scale, (x1 - x0) / scale, (y1 - y0) / scale)

    t_start = time.perf_counter()
    candidates = create_candidate_segments(
        bounds, opts['density'], opts['style'], rng,
        length_min=opts['line_length_min'], length_max=opts['line_length_max'],
        avg_length=opts['line_length'])
    inside = filter_candidates(candidates, mask, scale)
    logger.debug("Candidates: %d generated, %d inside (%.1fms)",
                 len(candidates), len(inside), (time.perf_counter() - t_start) * 1000)

    t_place = time.perf_counter()
    spacing = path_spacing(opts['density'], thickness, radius)
    clearance = pad_clearance(thickness, radius)
    length_window = None
    if opts['line_length'] is None:
        length_window = (opts['line_length_min'], opts['line_length_max'])
    state = place_segments(inside, spacing, clearance,
                           length_window=length_window,
                           progress_callback=progress_callback)
    placed = state.segments
    logger.debug("Placement: %d accepted, rejections %s (%.1fms)",
                 len(placed), dict(state.rejections),
                 (time.perf_counter() - t_place) * 1000)

    forks = find_forks(placed)
    pads = extract_pads(placed, forks)
    shortened = shorten_segments(placed, forks, radius)

    pattern = Pattern(
        segments=shortened,
        circles=pads,
        forks=forks,
        line_thickness=thickness,
        circle_radius=radius,
        line_color=opts['line_color'],
        gradient_type=opts['gradient_type'],
        gradient_color=opts['gradient_color'] or opts['line_color'],
        gradient_start=opts['gradient_start'],
        gradient_end=opts['gradient_end'],
        stats={
            'candidates': len(candidates),
            'inside': len(inside),
            'placed': len(placed),
            'forks': len(forks),
            'pads': len(pads),
        },
    )
    logger.info("Generated pattern: %d segments, %d pads, %d forks from %d candidates",
                len(placed), len(pads), len(forks), len(candidates))
    return rescale_pattern(pattern, scale)


# ============================================================================
# RENDERING & EXPORT
# ============================================================================

class _StraightLine(DrawingBasicElement):
    """A plain SVG <line> element."""
    TAG_NAME = 'line'

    def __init__(self, x1, y1, x2, y2, **kwargs):
        super().__init__(x1=x1, y1=y1, x2=x2, y2=y2, **kwargs)


def gradient_geometry(pattern, width, height):
    """Return (start, end) gradient handles, filling in canvas defaults."""
    start, end = pattern.gradient_start, pattern.gradient_end
    if start is not None and end is not None:
        return start, end
    if pattern.gradient_type == 'linear':
        return (width / 2.0, float(height)), (width / 2.0, 0.0)
    centre = (width / 2.0, height / 2.0)
    return centre, centre


def build_gradient(pattern, width, height, gradient_id='patternGradient'):
    """Single shared gradient for the whole pattern, or None for flat colour."""
    if pattern.gradient_type not in ('linear', 'radial'):
        return None
    start, end = gradient_geometry(pattern, width, height)
    if pattern.gradient_type == 'linear':
        gradient = draw.LinearGradient(start[0], start[1], end[0], end[1],
                                       gradientUnits='userSpaceOnUse', id=gradient_id)
    else:
        radius = _distance(start, end) or DEFAULT_RADIAL_RADIUS
        gradient = draw.RadialGradient(start[0], start[1], radius,
                                       gradientUnits='userSpaceOnUse', id=gradient_id)
    gradient.add_stop('0%', pattern.line_color)
    gradient.add_stop('100%', pattern.gradient_color or pattern.line_color)
    return gradient


def _render_pattern_to_group(pattern, target, stroke):
    """Append segments, pads and forks to `target` (Drawing or Group)."""
    sw = pattern.line_thickness
    for seg in pattern.segments:
        if seg.is_bent:
            coords = [c for p in seg.points for c in p]
            target.append(draw.Lines(*coords, close=False, fill='none',
                                     stroke=stroke, stroke_width=sw))
        else:
            (sx, sy), (ex, ey) = seg.start, seg.end
            target.append(_StraightLine(sx, sy, ex, ey, stroke=stroke, stroke_width=sw))

    for cx, cy in pattern.circles:
        target.append(draw.Circle(cx, cy, pattern.circle_radius, fill='none',
                                  stroke=stroke, stroke_width=sw))

    fork_r = pattern.circle_radius * FORK_RADIUS_FACTOR
    for fork in pattern.forks:
        target.append(draw.Circle(fork.point[0], fork.point[1], fork_r, fill='none',
                                  stroke=stroke, stroke_width=sw))


def render_pattern(pattern, width, height, background=None):
    """Build a drawsvg Drawing of `pattern` on a width x height canvas.

    The pattern goes into one group with id 'patternLayer'. If `background`
    is a colour, an opaque full-canvas rectangle is drawn underneath.
    """
    d = draw.Drawing(width, height)
    if background:
        d.append(draw.Rectangle(0, 0, width, height, fill=background))

    gradient = build_gradient(pattern, width, height)
    stroke = gradient if gradient is not None else pattern.line_color

    layer = draw.Group(id='patternLayer')
    _render_pattern_to_group(pattern, layer, stroke)
    d.append(layer)
    return d


def render_svg(pattern, width, height):
    """Render a pattern to an SVG string (no background)."""
    return render_pattern(pattern, width, height).as_svg()


def export_svg(pattern, width, height, background=None):
    """Standalone SVG document for download.

    Same pixel size as the source canvas, gradient definitions included,
    optional opaque background fill.
    """
    return render_pattern(pattern, width, height, background=background).as_svg()
