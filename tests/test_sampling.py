from __future__ import annotations

import math
import unittest

from celltrack.sampling import SamplingConfig, resolve_duration, sample_for_config, sample_timestamps


class SampleTimestampsTest(unittest.TestCase):
    def test_long_video_widens_interval(self) -> None:
        out = sample_timestamps(60.0, 1.0, 30)
        self.assertEqual(len(out), 30)
        self.assertEqual(out[0], 0.0)
        self.assertAlmostEqual(out[1], 2.0)
        self.assertAlmostEqual(out[-1], 58.0)

    def test_short_video_uses_min_interval(self) -> None:
        self.assertEqual(sample_timestamps(5.0, 1.0, 30), [0.0, 1.0, 2.0, 3.0, 4.0])

    def test_non_positive_duration(self) -> None:
        self.assertEqual(sample_timestamps(0.0, 1.0, 30), [0.0])
        self.assertEqual(sample_timestamps(-3.0, 1.0, 30), [0.0])

    def test_frame_cap_takes_precedence(self) -> None:
        out = sample_timestamps(1000.0, 1.0, 7)
        self.assertEqual(len(out), 7)
        self.assertLess(out[-1], 1000.0)

    def test_strictly_increasing_with_min_gap(self) -> None:
        for duration, min_interval, max_frames in [(17.3, 0.7, 11), (3.0, 2.5, 30), (120.0, 1.5, 4), (9.99, 1.0, 10)]:
            out = sample_timestamps(duration, min_interval, max_frames)
            self.assertEqual(out[0], 0.0)
            self.assertLessEqual(len(out), max_frames)
            for prev, cur in zip(out, out[1:]):
                self.assertGreater(cur, prev)
                self.assertGreaterEqual(cur - prev, min_interval - 1e-9)
                self.assertLess(cur, duration)

    def test_invalid_arguments(self) -> None:
        with self.assertRaises(ValueError):
            sample_timestamps(10.0, 0.0, 5)
        with self.assertRaises(ValueError):
            sample_timestamps(10.0, 1.0, 0)


class SamplingConfigTest(unittest.TestCase):
    def test_unknown_duration_uses_fallback(self) -> None:
        config = SamplingConfig(fallback_duration_sec=12.0)
        self.assertEqual(resolve_duration(None, config), 12.0)
        self.assertEqual(resolve_duration(math.nan, config), 12.0)
        self.assertEqual(resolve_duration(math.inf, config), 12.0)
        self.assertEqual(resolve_duration(4.5, config), 4.5)

    def test_sample_for_config(self) -> None:
        config = SamplingConfig(min_interval_sec=1.0, max_frames=30, fallback_duration_sec=30.0)
        out = sample_for_config(math.nan, config)
        self.assertEqual(len(out), 30)
        self.assertAlmostEqual(out[-1], 29.0)

    def test_validation(self) -> None:
        with self.assertRaises(ValueError):
            SamplingConfig(max_frames=0).validate()
        with self.assertRaises(ValueError):
            SamplingConfig(jpeg_quality=0).validate()
        with self.assertRaises(ValueError):
            SamplingConfig(frame_timeout_sec=0).validate()


if __name__ == "__main__":
    unittest.main()
