import base64
import math
import unittest

import torch

from compound_core import (
    DEMO_ENTITY,
    EntitySnapshot,
    EntropyLevel,
    EvolutionConfig,
    InvalidEntityError,
    StabilityEvaluator,
)


def _entity(**overrides) -> EntitySnapshot:
    data = dict(DEMO_ENTITY)
    data.update(overrides)
    return EntitySnapshot.from_mapping(data)


class TestEntitySnapshot(unittest.TestCase):
    def test_01_camel_case_mapping_is_accepted(self) -> None:
        entity = _entity()
        self.assertEqual(entity.compound, "TITAN_SERUM")
        self.assertEqual(entity.initial_size, 10.0)
        self.assertEqual(entity.unlocked_abilities, {"mutation": False, "strength": True})
        self.assertEqual(entity.mutation_count, 0)
        self.assertAlmostEqual(entity.unlocked_fraction, 0.5)

    def test_02_invalid_snapshots_are_rejected(self) -> None:
        bad_cases = [
            {"health": float("nan")},
            {"health": -1},
            {"health": True},
            {"speed": "fast"},
            {"initialSize": 0},
            {"unlockedAbilities": {}},
            {"mutations": "abc"},
            {"mutations": None},
            {"compound": ""},
        ]
        for overrides in bad_cases:
            with self.subTest(overrides=overrides):
                with self.assertRaises(InvalidEntityError):
                    _entity(**overrides)

    def test_03_missing_field_and_non_mapping(self) -> None:
        data = dict(DEMO_ENTITY)
        data.pop("health")
        with self.assertRaises(InvalidEntityError):
            EntitySnapshot.from_mapping(data)
        with self.assertRaises(InvalidEntityError):
            EntitySnapshot.from_mapping(["TITAN_SERUM"])


class TestStabilityEvaluator(unittest.TestCase):
    def setUp(self) -> None:
        self.evaluator = StabilityEvaluator(EvolutionConfig(), clock=lambda: 0.0)

    def test_01_titan_serum_example(self) -> None:
        signature, quantum, score = self.evaluator.assess(_entity())
        self.assertEqual(signature.base, base64.b64encode(b"TITAN_SERUM").decode("ascii"))
        self.assertAlmostEqual(signature.entropy, 0.9)
        self.assertAlmostEqual(signature.mutation, 0.01)
        self.assertAlmostEqual(quantum.coherence, 144.0)
        self.assertAlmostEqual(quantum.superposition, 0.15)
        self.assertAlmostEqual(quantum.entanglement, 0.2)
        self.assertEqual(score.entropy_level, EntropyLevel.UNSTABLE)
        self.assertEqual(len(score.factors), 16)
        self.assertEqual(score.factors[0], 0.0)
        self.assertAlmostEqual(score.overall_stability, sum(score.factors) / 16)
        self.assertGreaterEqual(score.overall_stability, 0.0)
        self.assertLessEqual(score.overall_stability, 1.0)

    def test_02_threshold_is_strict(self) -> None:
        lizard = self.evaluator.entropy(_entity(compound="LIZARD_SERUM"))
        self.assertAlmostEqual(lizard, 0.85)
        _, _, score = self.evaluator.assess(_entity(compound="LIZARD_SERUM"))
        self.assertEqual(score.entropy_level, EntropyLevel.UNSTABLE)
        _, _, score = self.evaluator.assess(_entity(compound="THE_GRASSES"))
        self.assertEqual(score.entropy_level, EntropyLevel.STABLE)

    def test_03_unknown_compound_uses_default_entropy(self) -> None:
        entity = _entity(compound="MYSTERY_GOO", mutations=["x", "y"])
        self.assertAlmostEqual(self.evaluator.entropy(entity), 0.5 * 1.2)

    def test_04_stability_matrix_diagonal(self) -> None:
        matrix = self.evaluator.stability_matrix(_entity())
        self.assertEqual(tuple(matrix.shape), (16, 16))
        self.assertEqual(float(matrix[8, 8]), 1.0)
        self.assertEqual(float(matrix.sum()), 1.0)

        capped = self.evaluator.stability_matrix(_entity(health=250))
        self.assertEqual(float(capped[15, 15]), 1.0)

        inactive = self.evaluator.stability_matrix(_entity(active=False, health=5))
        self.assertEqual(float(inactive[0, 0]), 0.5)

    def test_05_quantum_state_branches(self) -> None:
        poly = _entity(compound="POLYJUICE_POTION", transformTarget="rat", isTransformed=True)
        quantum = self.evaluator.quantum_state(poly)
        self.assertAlmostEqual(quantum.entanglement, 0.9)
        self.assertAlmostEqual(quantum.superposition, 0.35)

        mutated = _entity(mutations=["a", "b", "c"])
        self.assertAlmostEqual(self.evaluator.quantum_state(mutated).entanglement, 0.5)

    def test_06_mutation_factor_doubles_with_mutation_ability(self) -> None:
        entity = _entity(unlockedAbilities={"mutation": True})
        self.assertAlmostEqual(self.evaluator.mutation_factor(entity), 0.02)
        peak = self.evaluator.mutation_factor(entity, now_ms=10000.0 * math.pi / 2.0)
        self.assertAlmostEqual(peak, 0.04)

    def test_07_factor_formula(self) -> None:
        signature, quantum, score = self.evaluator.assess(_entity(compound="THE_GRASSES"))
        steps = torch.arange(16, dtype=torch.float64)
        expected = torch.abs(torch.sin(steps * 0.75) * torch.cos(quantum.coherence * steps))
        self.assertTrue(torch.allclose(torch.tensor(score.factors, dtype=torch.float64), expected))
        self.assertEqual(signature.stability.dtype, torch.float64)


if __name__ == "__main__":
    unittest.main()
