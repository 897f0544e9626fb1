"""
Tests for the marker-scan pipeline and its Flask host.
"""
import io
import json

import cv2
import numpy as np
import pytest

from conftest import (
    MARKER_CENTERS,
    BrokenSource,
    FrameListSource,
    RecordingListener,
    draw_markers,
    draw_page,
)
from error_handlers import (
    CameraUnavailableError,
    DegenerateGeometryError,
    InsufficientCandidatesError,
    MarkerRefinementFailedError,
    ScannerError,
    handle_error,
)
from layer1_capture import Frame, Rect, Space, WorkBuffer, cover_transform, display_to_capture
from layer2_detection import (
    CandidateExtractor,
    CornerResolver,
    DetectionState,
    MarkerBlobExtractor,
    Phase,
    Point2D,
    Quadrilateral,
    RawCandidate,
    StabilityConfig,
    StabilityTracker,
    TrackerEvent,
    advance,
    order_corners,
)
from layer2_detection.geometry import is_convex, merge_close_candidates, nearest_candidate
from layer3_rectification import Rectifier, RectifierConfig, canvas_corners, map_points, perspective_matrix
from layer4_auto_capture import CaptureConfig, CaptureOrchestrator


def _candidates(points, space=Space.WORK, area=100.0):
    return [RawCandidate(Point2D(float(x), float(y), space), area, 1.0, 1.0) for x, y in points]


def _quad(points, space=Space.CAPTURE):
    return Quadrilateral.from_array(np.array(points, dtype=np.float32), space)


def _assert_corners(quad, expected, tol):
    got = quad.as_array()
    assert np.abs(got - np.array(expected, dtype=np.float32)).max() <= tol, got


def _config(required=15, tolerance=5, work_max_side=1000, **kwargs):
    cfg = CaptureConfig(work_max_side=work_max_side, tick_interval=0.0, **kwargs)
    cfg.stability.required_frames = required
    cfg.stability.miss_tolerance = tolerance
    return cfg


class TestGeometry:
    """Test point ordering and quadrilateral checks."""

    def test_order_corners_labels_extremes(self):
        pts = np.array([[100, 50], [400, 60], [420, 500], [90, 480]], dtype=np.float32)
        shuffled = pts[[2, 0, 3, 1]]
        ordered = order_corners(shuffled)
        np.testing.assert_array_equal(ordered, pts)

    def test_convexity(self):
        square = [[0, 0], [10, 0], [10, 10], [0, 10]]
        bowtie = [[0, 0], [10, 10], [10, 0], [0, 10]]
        assert is_convex(square)
        assert not is_convex(bowtie)

    def test_merge_keeps_larger_blob(self):
        outer = RawCandidate(Point2D(100, 100, Space.WORK), 1500.0, 1.0, 0.95)
        hole = RawCandidate(Point2D(100.5, 100, Space.WORK), 400.0, 1.0, 0.9)
        other = RawCandidate(Point2D(300, 100, Space.WORK), 1500.0, 1.0, 0.95)
        merged = merge_close_candidates([hole, outer, other], min_separation=8)
        assert len(merged) == 2
        assert outer in merged and hole not in merged

    def test_nearest_candidate_respects_bound(self):
        cands = _candidates([(10, 10), (50, 50)])
        target = Point2D(12, 12, Space.WORK)
        assert nearest_candidate(target, cands, 5).point.x == 10
        assert nearest_candidate(Point2D(30, 30, Space.WORK), cands, 5) is None

    def test_points_from_different_spaces_do_not_mix(self):
        with pytest.raises(ValueError):
            Point2D(0, 0, Space.WORK).distance_to(Point2D(0, 0, Space.CAPTURE))
        with pytest.raises(ValueError):
            Quadrilateral(Point2D(0, 0, Space.WORK), Point2D(1, 0, Space.WORK),
                          Point2D(1, 1, Space.WORK), Point2D(0, 1, Space.CAPTURE))

    def test_quad_scaling(self):
        quad = _quad([[10, 10], [90, 10], [90, 60], [10, 60]], Space.WORK)
        big = quad.scaled(2.0, Space.CAPTURE)
        assert big.space is Space.CAPTURE
        assert big.tr.x == 180 and big.bl.y == 120


class TestCornerResolver:
    """Test reducing candidates to an oriented quadrilateral."""

    CORNERS = [(100, 120), (690, 90), (720, 880), (80, 860)]

    def test_resolves_corners_amid_interior_noise(self):
        rng = np.random.default_rng(7)
        noise = np.column_stack([rng.uniform(200, 600, 40), rng.uniform(250, 700, 40)])
        points = list(self.CORNERS) + [tuple(p) for p in noise]
        order = rng.permutation(len(points))
        cands = _candidates([points[i] for i in order])

        quad = CornerResolver().resolve(cands, frame_width=800)

        assert quad.tl.as_tuple() == (100.0, 120.0)
        assert quad.tr.as_tuple() == (690.0, 90.0)
        assert quad.br.as_tuple() == (720.0, 880.0)
        assert quad.bl.as_tuple() == (80.0, 860.0)

    def test_fewer_than_four_candidates(self):
        with pytest.raises(InsufficientCandidatesError) as exc:
            CornerResolver().resolve(_candidates(self.CORNERS[:3]), frame_width=800)
        assert exc.value.details['found'] == 3
        assert exc.value.error_code == "INSUFFICIENT_CANDIDATES"

    def test_rejects_narrow_cluster(self):
        cluster = [(400, 400), (460, 400), (460, 460), (400, 460)]
        with pytest.raises(DegenerateGeometryError):
            CornerResolver().resolve(_candidates(cluster), frame_width=800)

    def test_rejects_collinear_points(self):
        line = [(0, 0), (300, 300), (600, 600), (799, 799)]
        with pytest.raises(DegenerateGeometryError):
            CornerResolver().resolve(_candidates(line), frame_width=800)

    def test_span_ratio_is_configurable(self):
        small = [(300, 300), (500, 300), (500, 500), (300, 500)]
        with pytest.raises(DegenerateGeometryError):
            CornerResolver(min_span_ratio=0.3).resolve(_candidates(small), frame_width=800)
        quad = CornerResolver(min_span_ratio=0.2).resolve(_candidates(small), frame_width=800)
        assert quad.span == 200


class TestDisplayMapping:
    """Test guide box mapping from display to capture coordinates."""

    def test_same_aspect_is_plain_scaling(self):
        rect = display_to_capture(Rect(10, 20, 100, 50), (1280, 720), (640, 360))
        assert rect == Rect(20, 40, 200, 100)

    def test_width_is_clipped_on_portrait_display(self):
        video, display = (1920, 1080), (400, 800)
        scale, offset_x, offset_y = cover_transform(video, display)
        assert scale == pytest.approx(800 / 1080)
        assert offset_y == pytest.approx(0)
        assert offset_x == pytest.approx((1920 * scale - 400) / 2)

        rect = display_to_capture(Rect(50, 100, 300, 600), video, display)
        assert rect.x == pytest.approx((50 + offset_x) / scale)
        assert rect.y == pytest.approx(100 / scale)
        assert rect.width == pytest.approx(300 / scale)
        assert rect.height == pytest.approx(600 / scale)

    def test_height_is_clipped_on_wide_display(self):
        video, display = (1080, 1920), (800, 400)
        scale, offset_x, offset_y = cover_transform(video, display)
        assert offset_x == pytest.approx(0)
        assert offset_y > 0
        rect = display_to_capture(Rect(0, 0, 800, 400), video, display)
        assert rect.width == pytest.approx(1080)
        assert rect.y == pytest.approx(offset_y / scale)

    def test_result_is_clamped_to_video(self):
        rect = display_to_capture(Rect(-50, -50, 2000, 2000), (640, 480), (640, 480))
        assert rect == Rect(0, 0, 640, 480)

    def test_invalid_sizes(self):
        with pytest.raises(ValueError):
            cover_transform((0, 480), (640, 480))


class TestWorkBuffer:
    """Test work-resolution downscaling."""

    def test_downscales_longest_side(self):
        buf = WorkBuffer(max_side=800)
        frame = Frame(np.zeros((1200, 1600, 3), np.uint8))
        with buf.acquire(frame) as (work, scale):
            assert scale == pytest.approx(0.5)
            assert work.size == (800, 600)
            assert work.space is Space.WORK

    def test_buffer_is_reused(self):
        buf = WorkBuffer(max_side=800)
        frame = Frame(np.zeros((1200, 1600, 3), np.uint8))
        with buf.acquire(frame) as (first, _):
            first_pixels = first.pixels
        with buf.acquire(frame) as (second, _):
            assert second.pixels is first_pixels

    def test_small_frames_are_not_upscaled(self):
        buf = WorkBuffer(max_side=800)
        frame = Frame(np.zeros((300, 400, 3), np.uint8))
        with buf.acquire(frame) as (work, scale):
            assert scale == 1.0
            assert work.size == (400, 300)

    def test_concurrent_use_is_refused(self):
        buf = WorkBuffer(max_side=800)
        frame = Frame(np.zeros((1200, 1600, 3), np.uint8))
        with buf.acquire(frame):
            assert buf.in_use
            with pytest.raises(RuntimeError):
                with buf.acquire(frame):
                    pass
        assert not buf.in_use


class TestMarkerExtraction:
    """Test marker-blob candidate extraction."""

    def test_finds_four_markers(self, marker_image):
        cands = MarkerBlobExtractor().extract(Frame(marker_image, Space.WORK))
        assert len(cands) == 4
        centers = sorted(c.point.as_tuple() for c in cands)
        expected = sorted((float(x), float(y)) for x, y in MARKER_CENTERS)
        assert np.abs(np.array(centers) - np.array(expected)).max() <= 1.0

    def test_solidity_rejects_sparse_pattern(self):
        """A 3x3 checkerboard (fill about 0.5) fails, a solid square of the same box passes."""
        binary = np.zeros((800, 800), np.uint8)

        # Checkerboard cells overlap by one pixel so the black cells form one blob
        x0, y0, cell = 100, 100, 14
        for row in range(3):
            for col in range(3):
                if (row + col) % 2 == 0:
                    x, y = x0 + col * (cell - 1), y0 + row * (cell - 1)
                    binary[y:y + cell, x:x + cell] = 255

        # Solid square with the same 40x40 bounding box
        binary[500:540, 500:540] = 255

        cands = MarkerBlobExtractor().blobs_from_binary(binary, Space.WORK, 800 * 800, 800)

        assert len(cands) == 1
        assert cands[0].point.as_tuple() == (520.0, 520.0)
        assert cands[0].fill_ratio > 0.9

    def test_rejects_elongated_and_tiny_blobs(self):
        binary = np.zeros((800, 800), np.uint8)
        binary[100:110, 100:200] = 255   # bar, aspect 10
        binary[300:302, 300:302] = 255   # speckle
        cands = MarkerBlobExtractor().blobs_from_binary(binary, Space.WORK, 800 * 800, 800)
        assert cands == []

    def test_large_dark_region_is_not_a_marker(self):
        img = draw_markers(size=(800, 800), centers=[(100, 100), (700, 100), (700, 700), (100, 700)])
        cv2.rectangle(img, (300, 300), (499, 499), (0, 0, 0), -1)  # QR-sized block
        cands = MarkerBlobExtractor().extract(Frame(img, Space.WORK))
        assert len(cands) == 4
        assert all(not (290 < c.point.x < 510 and 290 < c.point.y < 510) for c in cands)

    def test_blank_frame_yields_nothing(self, blank_image):
        assert MarkerBlobExtractor().extract(Frame(blank_image, Space.WORK)) == []


class TestEdgeExtraction:
    """Test document-outline candidate extraction."""

    PAGE = [(150, 120), (650, 100), (680, 700), (120, 680)]

    def test_finds_page_outline(self):
        img = draw_page(corners=self.PAGE)
        extractor = CandidateExtractor(strategy="edge")
        cands = extractor.extract(Frame(img, Space.WORK))
        assert len(cands) == 4

        # Outline vertices come out already labelled TL, TR, BR, BL
        _assert_corners(Quadrilateral(*(c.point for c in cands)), self.PAGE, tol=6.0)

        quad = CornerResolver().resolve(cands, frame_width=800)
        _assert_corners(quad, self.PAGE, tol=6.0)

    def test_small_outline_is_ignored(self):
        img = draw_page(corners=[(350, 350), (450, 350), (450, 450), (350, 450)])
        assert CandidateExtractor(strategy="edge").extract(Frame(img, Space.WORK)) == []

    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            CandidateExtractor(strategy="sonar")


class TestStabilityTracker:
    """Test the debounce state machine."""

    QUAD = _quad([[100, 100], [700, 100], [700, 900], [100, 900]])

    def _tracker(self, required=15, tolerance=5, **kwargs):
        tracker = StabilityTracker(StabilityConfig(required, tolerance, **kwargs))
        tracker.start()
        return tracker

    def test_fires_exactly_once(self):
        tracker = self._tracker(required=15)
        events = [tracker.update(self.QUAD) for _ in range(20)]
        assert events.count(TrackerEvent.FIRED) == 1
        assert events.index(TrackerEvent.FIRED) == 14
        assert events[0] is TrackerEvent.LOCKING
        assert tracker.phase is Phase.FIRED

    def test_single_miss_does_not_reset(self):
        tracker = self._tracker()
        for _ in range(5):
            tracker.update(self.QUAD)
        tracker.update(None)
        assert tracker.state.stable_count == 5
        assert tracker.state.miss_count == 1
        tracker.update(self.QUAD)
        assert tracker.state.stable_count == 6
        assert tracker.state.miss_count == 0

    def test_misses_within_tolerance_keep_lock(self):
        tracker = self._tracker(tolerance=5)
        for _ in range(5):
            tracker.update(self.QUAD)
        for _ in range(5):
            assert tracker.update(None) is TrackerEvent.NONE
        assert tracker.phase is Phase.LOCKING
        assert tracker.state.stable_count == 5

    def test_misses_beyond_tolerance_reset(self):
        tracker = self._tracker(tolerance=5)
        for _ in range(5):
            tracker.update(self.QUAD)
        events = [tracker.update(None) for _ in range(6)]
        assert events[-1] is TrackerEvent.LOST
        assert tracker.phase is Phase.SCANNING
        assert tracker.state.stable_count == 0
        assert tracker.state.detections_seen == 5
        assert tracker.commit() == self.QUAD

    def test_detections_seen_cleared_by_start_and_cancel(self):
        tracker = self._tracker()
        for _ in range(3):
            tracker.update(self.QUAD)
        assert tracker.state.detections_seen == 3
        tracker.start()
        assert tracker.state.detections_seen == 0
        tracker.update(self.QUAD)
        tracker.cancel()
        assert tracker.state.detections_seen == 0

    def test_lock_can_be_reacquired_after_loss(self):
        tracker = self._tracker(required=3, tolerance=0)
        tracker.update(self.QUAD)
        assert tracker.update(None) is TrackerEvent.LOST
        assert tracker.update(self.QUAD) is TrackerEvent.LOCKING
        assert tracker.state.stable_count == 1
        assert tracker.state.detections_seen == 2

    def test_idle_tracker_ignores_detections(self):
        tracker = StabilityTracker()
        assert tracker.update(self.QUAD) is TrackerEvent.NONE
        assert tracker.phase is Phase.IDLE

    def test_fired_is_terminal_until_restart(self):
        tracker = self._tracker(required=2)
        tracker.update(self.QUAD)
        tracker.update(self.QUAD)
        assert tracker.update(None) is TrackerEvent.NONE
        assert tracker.phase is Phase.FIRED
        tracker.start()
        assert tracker.phase is Phase.SCANNING
        assert tracker.state.stable_count == 0

    def test_cancel_clears_everything(self):
        tracker = self._tracker()
        tracker.update(self.QUAD)
        tracker.cancel()
        assert tracker.state == DetectionState()
        assert tracker.commit() is None

    def test_rearm_returns_to_scanning(self):
        tracker = self._tracker(required=1)
        tracker.update(self.QUAD)
        tracker.rearm()
        assert tracker.phase is Phase.SCANNING
        assert tracker.state.stable_count == 0

    def test_commit_returns_last_quad(self):
        tracker = self._tracker()
        tracker.update(self.QUAD)
        assert tracker.commit() == self.QUAD

    def test_corner_movement_restarts_count(self):
        tracker = self._tracker(max_corner_shift=5.0)
        moved = _quad([[120, 100], [720, 100], [720, 900], [120, 900]])
        for _ in range(4):
            tracker.update(self.QUAD)
        tracker.update(moved)
        assert tracker.state.stable_count == 1
        assert tracker.state.last_quad == moved

    def test_advance_does_not_mutate_state(self):
        cfg = StabilityConfig()
        state = DetectionState(phase=Phase.SCANNING)
        new, event = advance(state, self.QUAD, cfg)
        assert state.stable_count == 0
        assert new.stable_count == 1
        assert event is TrackerEvent.LOCKING

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            StabilityTracker(StabilityConfig(required_frames=0))


class TestRectifier:
    """Test perspective mapping and binarization."""

    QUAD = _quad([[100, 100], [700, 100], [700, 900], [100, 900]])

    def test_inverse_mapping_reproduces_source(self):
        quad = _quad([[112.5, 95.0], [688.0, 130.25], [705.0, 880.0], [90.0, 860.5]])
        matrix = perspective_matrix(quad, (1728, 2200))
        back = map_points(canvas_corners((1728, 2200)), np.linalg.inv(matrix))
        np.testing.assert_allclose(back, quad.as_array(), atol=1e-3)

    def test_margin_insets_destination(self):
        corners = canvas_corners((100, 200), margin=10)
        np.testing.assert_array_equal(corners, [[10, 10], [90, 10], [90, 190], [10, 190]])

    def test_output_is_binarized_canvas(self, marker_image):
        rectifier = Rectifier(RectifierConfig(refine_with_markers=False))
        result = rectifier.rectify(Frame(marker_image), self.QUAD)
        assert result.pixels.shape == (2200, 1728)
        assert set(np.unique(result.pixels)) <= {0, 255}
        assert result.refined is False

    def test_refinement_snaps_to_markers(self, marker_image):
        coarse = _quad([[106, 94], [707, 105], [694, 906], [95, 893]])
        refined = Rectifier().refine(Frame(marker_image), coarse)
        _assert_corners(refined, MARKER_CENTERS, tol=1.0)

    def test_refinement_fails_without_markers(self, blank_image):
        with pytest.raises(MarkerRefinementFailedError) as exc:
            Rectifier().rectify(Frame(blank_image), self.QUAD)
        assert exc.value.details['corner'] == 'top-left'

    def test_refinement_reaches_inset_markers(self, inset_marker_page):
        """Markers 50 px inside the page corners are found from the outline corners."""
        image, outline, markers = inset_marker_page
        refined = Rectifier().refine(Frame(image), _quad(outline))
        _assert_corners(refined, markers, tol=1.0)

    def test_search_window_covers_match_distance(self, marker_image):
        rectifier = Rectifier()
        frame = Frame(marker_image)
        reach = rectifier.config.max_match_ratio * frame.width
        assert rectifier.search_radius(frame) > reach

    def test_two_corners_on_one_marker(self):
        image = draw_markers(centers=[(100, 100), (700, 100), (100, 900)])
        rectifier = Rectifier(RectifierConfig(max_match_ratio=1.0))
        with pytest.raises(MarkerRefinementFailedError) as exc:
            rectifier.refine(Frame(image), self.QUAD)
        assert exc.value.details['corner'] == 'bottom-left'

    def test_space_mismatch(self, marker_image):
        work_quad = self.QUAD.scaled(1.0, Space.WORK)
        with pytest.raises(ValueError):
            Rectifier().refine(Frame(marker_image), work_quad)


class TestCaptureOrchestrator:
    """End-to-end scan sessions over synthetic frame sources."""

    def _orchestrator(self, images, listener, **kwargs):
        orchestrator = CaptureOrchestrator(FrameListSource(images), _config(**kwargs), listener)
        orchestrator.start()
        return orchestrator

    def test_stable_markers_capture_once(self, marker_image, listener):
        orchestrator = self._orchestrator([marker_image] * 20, listener, required=15)

        results = [orchestrator.tick() for _ in range(20)]

        captures = [r for r in results if r is not None]
        assert len(captures) == 1
        assert captures[0].success
        assert len(listener.ready) == 1
        assert len(listener.stable) == 1
        _assert_corners(captures[0].quad, MARKER_CENTERS, tol=2.0)
        assert listener.ready[0].pixels.shape == (2200, 1728)
        assert orchestrator.token.cancelled

    def test_lost_document_never_captures(self, marker_image, blank_image, listener):
        # The 18 good frames stay below the firing threshold
        images = [marker_image] * 18 + [blank_image] * 10
        orchestrator = self._orchestrator(images, listener, required=20)

        for _ in range(28):
            orchestrator.tick()

        assert listener.ready == []
        assert listener.lost == 1
        assert orchestrator.tracker.phase is Phase.SCANNING
        assert orchestrator.tracker.state.stable_count == 0

    def test_three_markers_never_lock(self, listener):
        image = draw_markers(centers=MARKER_CENTERS[:3])
        orchestrator = self._orchestrator([image] * 20, listener)

        for _ in range(20):
            assert orchestrator.tick() is None
            assert isinstance(orchestrator.last_detection_error, InsufficientCandidatesError)
            assert orchestrator.tracker.phase is Phase.SCANNING

    def test_detection_runs_at_work_resolution(self, listener):
        centers = [(2 * x, 2 * y) for x, y in MARKER_CENTERS]
        image = draw_markers(size=(1600, 2000), centers=centers, side=80)
        orchestrator = self._orchestrator([image], listener, required=3, work_max_side=800)

        quad = orchestrator.detect(Frame(image))
        assert quad.space is Space.CAPTURE
        _assert_corners(quad, centers, tol=4.0)

        result = orchestrator.run(max_ticks=5)
        assert result.success
        _assert_corners(result.quad, centers, tol=2.0)

    def test_refinement_failure_rearms(self, marker_image, listener, monkeypatch):
        orchestrator = self._orchestrator([marker_image], listener, required=3)

        def no_markers(frame, quad):
            raise MarkerRefinementFailedError("top-left", 64)

        monkeypatch.setattr(orchestrator.rectifier, "refine", no_markers)

        results = [orchestrator.tick() for _ in range(3)]
        assert results[-1] is not None and not results[-1].success
        assert results[-1].error_code == "MARKER_REFINEMENT_FAILED"
        assert len(listener.failed) == 1
        assert orchestrator.tracker.phase is Phase.SCANNING
        assert not orchestrator.token.cancelled

        # Camera stays live: the next run of detections fires again
        results = [orchestrator.tick() for _ in range(3)]
        assert len(listener.failed) == 2

    def test_camera_failure_ends_session(self, listener):
        orchestrator = CaptureOrchestrator(BrokenSource(), _config(), listener)
        orchestrator.start()
        with pytest.raises(CameraUnavailableError):
            orchestrator.tick()
        assert orchestrator.tracker.phase is Phase.IDLE
        assert orchestrator.token.cancelled

    def test_stop_abandons_session(self, marker_image, listener):
        orchestrator = self._orchestrator([marker_image], listener, required=3)
        orchestrator.tick()
        orchestrator.stop()
        assert orchestrator.tick() is None
        assert orchestrator.tracker.phase is Phase.IDLE
        result = orchestrator.run(max_ticks=10)
        assert result.error_code == "SCAN_CANCELLED"
        assert listener.ready == []

    def test_run_gives_up_after_max_ticks(self, blank_image, listener):
        orchestrator = self._orchestrator([blank_image], listener)
        result = orchestrator.run(max_ticks=10)
        assert not result.success
        assert result.error_code == "NO_CAPTURE"
        assert orchestrator.ticks == 10

    def test_manual_commit_uses_last_detection(self, marker_image, listener):
        orchestrator = self._orchestrator([marker_image], listener, required=15)
        for _ in range(3):
            orchestrator.tick()

        result = orchestrator.commit_manual()

        assert result.success
        assert result.metadata['mode'] == 'manual'
        _assert_corners(result.quad, MARKER_CENTERS, tol=2.0)

    def test_manual_commit_falls_back_to_guide_box(self, blank_image, listener):
        orchestrator = self._orchestrator([blank_image], listener)
        orchestrator.tick()

        # 800x1000 video shown 1:2 in a 400x500 element
        result = orchestrator.commit_manual(Rect(50, 50, 300, 400), (400, 500))

        assert result.success
        assert result.metadata['mode'] == 'guide_box'
        assert result.image.refined is False
        _assert_corners(result.quad, [[100, 100], [700, 100], [700, 900], [100, 900]], tol=1e-3)

    def test_manual_commit_with_nothing(self, blank_image, listener):
        orchestrator = self._orchestrator([blank_image], listener)
        result = orchestrator.commit_manual()
        assert not result.success
        assert result.error_code == "NOTHING_TO_COMMIT"

    def test_edge_strategy_capture(self, listener):
        page = [(150, 120), (650, 100), (680, 700), (120, 680)]
        image = draw_page(corners=page)
        orchestrator = self._orchestrator([image], listener, required=5, strategy="edge")

        result = orchestrator.run(max_ticks=10)

        assert result.success
        assert result.image.refined is False
        _assert_corners(result.quad, page, tol=6.0)

    def test_hybrid_strategy_capture(self, inset_marker_page, listener):
        """Outline tracking per frame, corners snapped to the inset markers at capture."""
        image, outline, markers = inset_marker_page
        orchestrator = self._orchestrator([image], listener, required=5, strategy="hybrid")

        quad = orchestrator.detect(Frame(image))
        _assert_corners(quad, outline, tol=6.0)

        result = orchestrator.run(max_ticks=10)

        assert result.success, result.error
        assert result.image.refined is True
        assert result.metadata['strategy'] == 'hybrid'
        _assert_corners(result.quad, markers, tol=2.0)
        assert len(listener.ready) == 1

    def test_stop_during_capture_drops_image(self, marker_image):
        class StopOnStable(RecordingListener):
            def on_quad_stable(self, quad):
                super().on_quad_stable(quad)
                orchestrator.stop()

        listener = StopOnStable()
        orchestrator = CaptureOrchestrator(FrameListSource([marker_image]), _config(required=3), listener)
        orchestrator.start()

        results = [orchestrator.tick() for _ in range(5)]

        assert results[2] is not None
        assert results[2].error_code == "SCAN_CANCELLED"
        assert len(listener.stable) == 1
        assert listener.ready == []
        assert orchestrator.tracker.phase is Phase.IDLE
        assert results[3:] == [None, None]

    def test_manual_commit_after_detection_lost(self, marker_image, blank_image, listener):
        images = [marker_image] * 3 + [blank_image] * 6 + [marker_image]
        orchestrator = self._orchestrator(images, listener, required=15, tolerance=5)
        for _ in range(9):
            orchestrator.tick()
        assert listener.lost == 1
        assert orchestrator.tracker.state.detections_seen == 3

        result = orchestrator.commit_manual(Rect(0, 0, 10, 10), (800, 1000))

        assert result.success
        assert result.metadata['mode'] == 'manual'
        _assert_corners(result.quad, MARKER_CENTERS, tol=2.0)

    def test_config_from_env(self):
        cfg = CaptureConfig.from_env({
            'SCAN_STRATEGY': 'hybrid',
            'SCAN_REQUIRED_FRAMES': '30',
            'SCAN_MISS_TOLERANCE': '3',
            'SCAN_WORK_MAX_SIDE': '640',
            'SCAN_REFINE_MARKERS': 'false',
        })
        assert cfg.strategy == 'hybrid'
        assert cfg.stability.required_frames == 30
        assert cfg.stability.miss_tolerance == 3
        assert cfg.work_max_side == 640
        assert cfg.rectifier.refine_with_markers is False


class TestErrorHandling:
    """Test error serialization."""

    def test_scanner_error_to_dict(self):
        data = handle_error(InsufficientCandidatesError(2))
        assert data['success'] is False
        assert data['error_code'] == 'INSUFFICIENT_CANDIDATES'
        assert data['details']['found'] == 2

    def test_unexpected_error(self):
        data = handle_error(RuntimeError("boom"))
        assert data['error_code'] == 'UNEXPECTED_ERROR'
        assert data['details']['error_type'] == 'RuntimeError'

    def test_hierarchy(self):
        assert issubclass(MarkerRefinementFailedError, ScannerError)
        assert not issubclass(InsufficientCandidatesError, CameraUnavailableError)


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_returns_ok(self, client):
        response = client.get('/health')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'healthy'

    def test_status_lists_endpoints(self, client):
        data = json.loads(client.get('/api/status').data)
        assert data['success'] is True
        assert 'detect' in data['endpoints']
        assert data['camera_open'] is False


class TestDetectEndpoint:
    """Test single-image detection endpoint."""

    def _upload(self, client, image):
        ok, buffer = cv2.imencode('.png', image)
        assert ok
        return client.post(
            '/api/detect',
            data={'image': (io.BytesIO(buffer.tobytes()), 'page.png')},
            content_type='multipart/form-data'
        )

    def test_detect_requires_image(self, client):
        response = client.post('/api/detect', data={}, content_type='multipart/form-data')
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'NO_IMAGE'

    def test_detect_rejects_garbage(self, client):
        response = client.post(
            '/api/detect',
            data={'image': (io.BytesIO(b'not an image'), 'page.png')},
            content_type='multipart/form-data'
        )
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_IMAGE'

    def test_detect_finds_markers(self, client, square_marker_image):
        response = self._upload(client, square_marker_image)
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['detected'] is True
        tl = data['quad']['corners']['top-left']
        assert abs(tl[0] - 100) <= 2 and abs(tl[1] - 100) <= 2

    def test_detect_reports_missing_markers(self, client, blank_image):
        response = self._upload(client, blank_image)
        assert response.status_code == 422
        data = json.loads(response.data)
        assert data['detected'] is False
        assert data['error_code'] == 'INSUFFICIENT_CANDIDATES'


class TestSessionEndpoints:
    """Test scan session endpoints without camera hardware."""

    def test_detection_status_idle(self, client):
        data = json.loads(client.get('/detection_status').data)
        assert data['detection']['phase'] == 'idle'
        assert data['detection']['has_result'] is False

    def test_result_missing(self, client):
        response = client.get('/api/result')
        assert response.status_code == 404

    def test_start_camera_without_device(self, client):
        data = json.loads(client.post('/start_camera').data)
        assert data['success'] is False
        assert data['error_code'] == 'CAMERA_NOT_FOUND'

    def test_capture_without_camera(self, client):
        data = json.loads(client.post('/capture', json={}).data)
        assert data['success'] is False
        assert data['error_code'] == 'CAMERA_NOT_INITIALIZED'

    def test_capture_rejects_bad_guide_box(self, client):
        response = client.post('/capture', json={'guide_box': {'x': 1}, 'display_size': [400, 500]})
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_GUIDE_BOX'


class TestScanCoordinator:
    """Test the session thread handling behind the HTTP routes."""

    def test_stop_waits_for_loop_before_reset(self, blank_image, monkeypatch):
        from app import ScanCoordinator

        coordinator = ScanCoordinator(camera_index=99, config=_config(required=1000))
        orchestrator = coordinator.orchestrator
        orchestrator.source = FrameListSource([blank_image])
        orchestrator.start()
        coordinator._spawn()
        thread = coordinator._thread

        alive_at_reset = []
        original_stop = orchestrator.stop

        def stop():
            alive_at_reset.append(thread.is_alive())
            original_stop()

        monkeypatch.setattr(orchestrator, "stop", stop)
        coordinator.stop_scanning()

        assert alive_at_reset == [False]
        assert coordinator._thread is None
        assert orchestrator.tracker.phase is Phase.IDLE
        assert orchestrator.token.cancelled

    def test_guide_color_after_failed_capture(self):
        from app import guide_color

        assert guide_color(Phase.SCANNING, "red") == "red"
        assert guide_color(Phase.LOCKING, "red") == "yellow"
        assert guide_color(Phase.LOCKING, "white") == "yellow"
        assert guide_color(Phase.LOCKING, "green") == "green"
        assert guide_color(Phase.IDLE, "white") == "white"
