import itertools
import math
import random
import unittest

from compound_core import SignalProcessor, run_signal_demo


class TestSignalProcessor(unittest.TestCase):
    def setUp(self) -> None:
        random.seed(5)

    def test_01_unseen_feature_gets_rng_weight_once(self) -> None:
        processor = SignalProcessor(rng=random.Random(3))
        expected = random.Random(3).random()
        self.assertAlmostEqual(processor.signal_strength({"a": 1.0}), expected)
        self.assertAlmostEqual(processor.signal_strength({"a": 2.0}), 2.0 * expected)
        self.assertEqual(list(processor.weights), ["a"])

    def test_02_history_is_bounded_and_evicts_oldest(self) -> None:
        ticks = itertools.count()
        processor = SignalProcessor(rng=random.Random(1), clock=lambda: float(next(ticks)))
        for _ in range(150):
            processor.process_signal({"a": 0.3, "b": 0.7})
        self.assertEqual(len(processor.activation_history), 100)
        self.assertEqual(processor.activation_history[0].timestamp, 50000.0)
        self.assertEqual(processor.activation_history[-1].timestamp, 149000.0)

    def test_03_weights_stay_clamped(self) -> None:
        processor = SignalProcessor(rng=random.Random(2))
        for _ in range(60):
            processor.process_signal({"a": 50.0, "b": -20.0}, {"intensity": 3.0})
        for weight in processor.weights.values():
            self.assertGreaterEqual(weight, 0.0)
            self.assertLessEqual(weight, 1.0)

    def test_04_context_modulation_rules(self) -> None:
        processor = SignalProcessor(rng=random.Random(4))
        self.assertEqual(processor.context_modulation(None), 1.0)
        self.assertEqual(processor.context_modulation({"intensity": 0.5}), 2.0)

        processor.process_signal({"a": 1.0})
        processor.process_signal({"a": 1.0})
        # missing intensity counts as zero
        self.assertAlmostEqual(processor.context_modulation({}), 0.5)
        self.assertLessEqual(processor.context_modulation({"intensity": 1000.0}), 2.0)

    def test_05_output_fields_follow_response(self) -> None:
        processor = SignalProcessor(rng=random.Random(6))
        weight = processor.weights["a"]
        out = processor.process_signal({"a": 1.0})

        strength = weight
        self.assertAlmostEqual(out.signal, math.tanh(strength))
        self.assertAlmostEqual(out.phase, 2.0 * math.pi / (1.0 + math.exp(-strength)))
        self.assertAlmostEqual(out.stability, abs(math.tanh(strength)))
        self.assertAlmostEqual(out.confidence, min(1.0, out.stability * out.stability))

    def test_06_weight_update_uses_decaying_rate(self) -> None:
        processor = SignalProcessor(rng=random.Random(8))
        before = processor.weights["a"]
        out = processor.process_signal({"a": 0.5})
        expected = min(1.0, max(0.0, before + out.signal * 0.01))
        self.assertAlmostEqual(processor.weights["a"], expected)
        self.assertAlmostEqual(processor.learning_rate, 0.01 * math.exp(-0.01))

    def test_07_confidence_is_bounded(self) -> None:
        processor = SignalProcessor(rng=random.Random(9))
        for i in range(30):
            out = processor.process_signal({"a": float(i), "b": 1.0}, {"intensity": 2.0})
            self.assertGreaterEqual(out.confidence, 0.0)
            self.assertLessEqual(out.confidence, 1.0)

    def test_08_signal_demo_reports_history(self) -> None:
        result = run_signal_demo({"a": 1.0, "b": 0.25}, intensity=0.5, repeat=4, seed=12)
        self.assertEqual(result["history_length"], 4)
        self.assertEqual(len(result["signals"]), 4)
        self.assertEqual(sorted(result["weights"]), ["a", "b"])

    def test_09_context_scales_amplitude_and_coherence(self) -> None:
        processor = SignalProcessor(rng=random.Random(21))
        first = processor.process_signal({"a": 1.0})
        self.assertGreater(first.stability, 0.0)

        context = {"intensity": 0.5}
        modulation = processor.context_modulation(context)
        self.assertAlmostEqual(modulation, 1.0 + first.stability * 0.5)
        strength = processor.weights["a"] * -0.8
        out = processor.process_signal({"a": -0.8}, context)

        self.assertAlmostEqual(out.signal, math.tanh(strength) * modulation)
        self.assertAlmostEqual(out.stability, abs(math.tanh(strength)) * modulation / 2.0)

    def test_10_empty_history_context_doubles_response(self) -> None:
        processor = SignalProcessor(rng=random.Random(22))
        weight = processor.weights["a"]
        out = processor.process_signal({"a": 1.0}, {"intensity": 0.3})
        self.assertAlmostEqual(out.signal, math.tanh(weight) * 2.0)
        self.assertAlmostEqual(out.stability, abs(math.tanh(weight)) * 2.0)


if __name__ == "__main__":
    unittest.main()
