from __future__ import annotations

import asyncio
import base64
import logging
import math
import random
import time
import warnings
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Deque, Dict, Mapping, Optional, Sequence, Tuple

import torch


logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger("compound_core")


STABILITY_DIMS = 16
DEFAULT_INPUT_FEATURES = 64
PREDICTION_BLOCK = 4
UNKNOWN_ABILITY = "unknown"

ABILITY_CATALOG: Tuple[str, ...] = (
    "mutation",
    "strength",
    "agility",
    "regeneration",
    "shape",
    "speed",
    "size",
    "mimic",
)


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, float(value)))


def _logistic(x: float) -> float:
    if x >= 0.0:
        return 1.0 / (1.0 + math.exp(-x))
    z = math.exp(x)
    return z / (1.0 + z)


class CompoundEvolutionError(Exception):
    """Base class for failures raised by the compound pipeline."""


class InvalidEntityError(CompoundEvolutionError, ValueError):
    """Entity snapshot is missing required fields or carries unusable values."""


class DimensionMismatchError(CompoundEvolutionError, ValueError):
    """Predictor input does not match the configured fan-in."""


class DegenerateNormalizationWarning(RuntimeWarning):
    """Ability matrix had no unlocked cell, so normalization was skipped."""


class Compound(str, Enum):
    VENOM_SYMBIOTE = "VENOM_SYMBIOTE"
    COMPOUND_V = "COMPOUND_V"
    TITAN_SERUM = "TITAN_SERUM"
    SUPER_SOLDIER_SERUM = "SUPER_SOLDIER_SERUM"
    POLYJUICE_POTION = "POLYJUICE_POTION"
    LIZARD_SERUM = "LIZARD_SERUM"
    THE_GRASSES = "THE_GRASSES"


class EntropyLevel(str, Enum):
    STABLE = "STABLE"
    UNSTABLE = "UNSTABLE"


class OptimizerMode(str, Enum):
    PER_CALL = "per_call"
    SHARED = "shared"


DEFAULT_ENTROPY_TABLE: Mapping[str, float] = MappingProxyType(
    {
        Compound.VENOM_SYMBIOTE.value: 0.8,
        Compound.COMPOUND_V.value: 0.7,
        Compound.TITAN_SERUM.value: 0.9,
        Compound.SUPER_SOLDIER_SERUM.value: 0.5,
        Compound.POLYJUICE_POTION.value: 0.95,
        Compound.LIZARD_SERUM.value: 0.85,
        Compound.THE_GRASSES.value: 0.75,
    }
)


_ACTIVATIONS: Dict[str, Callable[[torch.Tensor], torch.Tensor]] = {
    "relu": torch.relu,
    "sigmoid": torch.sigmoid,
    "tanh": torch.tanh,
}


@dataclass(frozen=True)
class LayerSpec:
    neurons: int
    activation: str = "relu"

    def __post_init__(self) -> None:
        if int(self.neurons) <= 0:
            raise ValueError(f"Layer needs a positive neuron count, got {self.neurons}")
        if self.activation not in _ACTIVATIONS:
            raise ValueError(f"Unknown activation: {self.activation}")


DEFAULT_LAYERS: Tuple[LayerSpec, ...] = (
    LayerSpec(128, "relu"),
    LayerSpec(256, "tanh"),
    LayerSpec(128, "sigmoid"),
)


@dataclass(frozen=True)
class OptimizerSettings:
    learning_rate: float = 0.001
    momentum: float = 0.9
    decay: float = 0.0001

    def to_dict(self) -> Dict[str, float]:
        return {
            "learning_rate": self.learning_rate,
            "momentum": self.momentum,
            "decay": self.decay,
        }


@dataclass(frozen=True)
class EvolutionConfig:
    """
    Immutable parameter set shared by the evaluator, predictor and orchestrator.

    Lookup tables are read-only mappings and tuples so one config instance can
    be handed to several orchestrators without them influencing each other.
    """

    input_features: int = DEFAULT_INPUT_FEATURES
    layers: Tuple[LayerSpec, ...] = DEFAULT_LAYERS
    entropy_table: Mapping[str, float] = field(default_factory=lambda: DEFAULT_ENTROPY_TABLE)
    default_entropy: float = 0.5
    entropy_threshold: float = 0.85
    transformation_compound: str = Compound.POLYJUICE_POTION.value
    ability_catalog: Tuple[str, ...] = ABILITY_CATALOG
    base_mutation_rate: float = 0.01
    base_coherence_ms: float = 100.0
    optimizer: OptimizerSettings = field(default_factory=OptimizerSettings)
    optimizer_mode: OptimizerMode = OptimizerMode.PER_CALL
    history_capacity: int = 1024
    history_window: int = 5

    def __post_init__(self) -> None:
        if not isinstance(self.entropy_table, MappingProxyType):
            object.__setattr__(self, "entropy_table", MappingProxyType(dict(self.entropy_table)))
        object.__setattr__(self, "layers", tuple(self.layers))
        object.__setattr__(self, "ability_catalog", tuple(self.ability_catalog))
        object.__setattr__(self, "optimizer_mode", OptimizerMode(self.optimizer_mode))
        if self.history_capacity <= 0:
            raise ValueError("history_capacity must be positive")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "input_features": self.input_features,
            "layers": [{"neurons": spec.neurons, "activation": spec.activation} for spec in self.layers],
            "entropy_table": dict(self.entropy_table),
            "default_entropy": self.default_entropy,
            "entropy_threshold": self.entropy_threshold,
            "transformation_compound": self.transformation_compound,
            "ability_catalog": list(self.ability_catalog),
            "base_mutation_rate": self.base_mutation_rate,
            "base_coherence_ms": self.base_coherence_ms,
            "optimizer": self.optimizer.to_dict(),
            "optimizer_mode": self.optimizer_mode.value,
            "history_capacity": self.history_capacity,
            "history_window": self.history_window,
        }


# camelCase keys as sent by the game client
_ENTITY_ALIASES = {
    "initialSize": "initial_size",
    "isTransformed": "is_transformed",
    "transformTarget": "transform_target",
    "unlockedAbilities": "unlocked_abilities",
}
_ENTITY_REQUIRED = ("compound", "health", "size", "initial_size", "speed", "unlocked_abilities")
_ENTITY_OPTIONAL = ("mutations", "active", "is_transformed", "transform_target")


@dataclass(frozen=True)
class EntitySnapshot:
    compound: str
    health: float
    size: float
    initial_size: float
    speed: float
    unlocked_abilities: Dict[str, bool]
    mutations: Tuple[Any, ...] = ()
    active: bool = True
    is_transformed: bool = False
    transform_target: Optional[str] = None

    def __post_init__(self) -> None:
        if isinstance(self.compound, Compound):
            object.__setattr__(self, "compound", self.compound.value)
        if not isinstance(self.compound, str) or not self.compound:
            raise InvalidEntityError("Entity compound must be a non-empty string.")

        for name in ("health", "size", "initial_size", "speed"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                raise InvalidEntityError(f"Entity field '{name}' must be a finite number, got {value!r}.")
            object.__setattr__(self, name, float(value))
        if self.health < 0.0:
            raise InvalidEntityError(f"Entity health must be non-negative, got {self.health}.")
        if self.initial_size <= 0.0:
            raise InvalidEntityError(f"Entity initial_size must be positive, got {self.initial_size}.")

        if not isinstance(self.unlocked_abilities, Mapping) or not self.unlocked_abilities:
            raise InvalidEntityError("Entity needs a non-empty unlocked_abilities mapping.")
        abilities = {str(name): bool(flag) for name, flag in self.unlocked_abilities.items()}
        object.__setattr__(self, "unlocked_abilities", abilities)

        if self.mutations is None or isinstance(self.mutations, (str, bytes, Mapping)):
            raise InvalidEntityError("Entity mutations must be a list.")
        try:
            object.__setattr__(self, "mutations", tuple(self.mutations))
        except TypeError as exc:
            raise InvalidEntityError("Entity mutations must be a list.") from exc

        object.__setattr__(self, "active", bool(self.active))
        object.__setattr__(self, "is_transformed", bool(self.is_transformed))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "EntitySnapshot":
        if not isinstance(data, Mapping):
            raise InvalidEntityError(f"Entity snapshot must be a mapping, got {type(data).__name__}.")
        fields: Dict[str, Any] = {}
        for key, value in data.items():
            name = _ENTITY_ALIASES.get(key, key)
            if name in _ENTITY_REQUIRED or name in _ENTITY_OPTIONAL:
                fields[name] = value
        missing = [name for name in _ENTITY_REQUIRED if name not in fields]
        if missing:
            raise InvalidEntityError(f"Entity snapshot is missing field(s): {', '.join(missing)}.")
        return cls(**fields)

    @property
    def mutation_count(self) -> int:
        return len(self.mutations)

    @property
    def unlocked_fraction(self) -> float:
        unlocked = sum(1 for flag in self.unlocked_abilities.values() if flag)
        return unlocked / len(self.unlocked_abilities)


@dataclass
class CompoundSignature:
    base: str
    mutation: float
    entropy: float
    stability: torch.Tensor


@dataclass
class QuantumState:
    superposition: float
    entanglement: float
    coherence: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "superposition": round(self.superposition, 6),
            "entanglement": round(self.entanglement, 6),
            "coherence": round(self.coherence, 6),
        }


@dataclass
class StabilityScore:
    factors: list[float]
    overall_stability: float
    entropy_level: EntropyLevel
    quantum_state: QuantumState

    def to_dict(self) -> Dict[str, object]:
        return {
            "factors": [round(value, 6) for value in self.factors],
            "overallStability": round(self.overall_stability, 6),
            "entropyLevel": self.entropy_level.value,
            "quantumState": self.quantum_state.to_dict(),
        }


class StabilityEvaluator:
    """
    Heuristic signature, quantum-state and stability-vector formulas.

    All time-dependent terms read one ``now_ms`` value per assessment so the
    signature and the quantum state of a single analysis agree.
    """

    def __init__(self, config: Optional[EvolutionConfig] = None, *, clock: Callable[[], float] = time.time) -> None:
        self.config = config or EvolutionConfig()
        self.clock = clock

    def now_ms(self) -> float:
        return float(self.clock()) * 1000.0

    def mutation_factor(self, entity: EntitySnapshot, now_ms: Optional[float] = None) -> float:
        now_ms = self.now_ms() if now_ms is None else now_ms
        multiplier = 2.0 if entity.unlocked_abilities.get("mutation") else 1.0
        time_factor = math.sin(now_ms / 10000.0)
        return self.config.base_mutation_rate * multiplier * (1.0 + abs(time_factor))

    def entropy(self, entity: EntitySnapshot) -> float:
        base = self.config.entropy_table.get(entity.compound, self.config.default_entropy)
        return base * (1.0 + entity.mutation_count * 0.1)

    def stability_matrix(self, entity: EntitySnapshot) -> torch.Tensor:
        matrix = torch.zeros((STABILITY_DIMS, STABILITY_DIMS), dtype=torch.float64)
        index = min(STABILITY_DIMS - 1, int(entity.health // 10))
        matrix[index, index] = 1.0 if entity.active else 0.5
        return matrix

    def signature(self, entity: EntitySnapshot, now_ms: Optional[float] = None) -> CompoundSignature:
        return CompoundSignature(
            base=base64.b64encode(entity.compound.encode("utf-8")).decode("ascii"),
            mutation=self.mutation_factor(entity, now_ms),
            entropy=self.entropy(entity),
            stability=self.stability_matrix(entity),
        )

    def quantum_state(self, entity: EntitySnapshot, now_ms: Optional[float] = None) -> QuantumState:
        now_ms = self.now_ms() if now_ms is None else now_ms
        seconds = now_ms / 1000.0
        fluctuation = math.sin(seconds) * math.cos(seconds)

        base_state = 0.7 if entity.is_transformed else 0.3
        superposition = base_state * (1.0 + fluctuation) * entity.unlocked_fraction

        if entity.compound == self.config.transformation_compound and entity.transform_target:
            entanglement = 0.9
        else:
            entanglement = 0.2 + entity.mutation_count * 0.1

        coherence = self.config.base_coherence_ms * (entity.size / entity.initial_size) * entity.speed
        return QuantumState(superposition=superposition, entanglement=entanglement, coherence=coherence)

    def evaluate(self, signature: CompoundSignature, quantum_state: QuantumState) -> StabilityScore:
        steps = torch.arange(STABILITY_DIMS, dtype=torch.float64)
        factors = torch.abs(torch.sin(steps * signature.entropy) * torch.cos(quantum_state.coherence * steps))
        level = EntropyLevel.STABLE if signature.entropy < self.config.entropy_threshold else EntropyLevel.UNSTABLE
        return StabilityScore(
            factors=factors.tolist(),
            overall_stability=float(factors.sum()) / STABILITY_DIMS,
            entropy_level=level,
            quantum_state=quantum_state,
        )

    def assess(self, entity: EntitySnapshot) -> Tuple[CompoundSignature, QuantumState, StabilityScore]:
        now_ms = self.now_ms()
        signature = self.signature(entity, now_ms)
        quantum_state = self.quantum_state(entity, now_ms)
        return signature, quantum_state, self.evaluate(signature, quantum_state)


class FeedForwardPredictor:
    """
    Fixed dense network: Xavier-uniform weights, zero biases, no training step.
    """

    def __init__(
        self,
        layers: Sequence[LayerSpec] = DEFAULT_LAYERS,
        *,
        input_features: int = DEFAULT_INPUT_FEATURES,
        dtype: torch.dtype = torch.float32,
    ) -> None:
        if not layers:
            raise ValueError("FeedForwardPredictor needs at least one layer.")
        self.layers: Tuple[LayerSpec, ...] = tuple(layers)
        self.input_features = int(input_features)
        self.dtype = dtype
        self.weights: list[torch.Tensor] = []
        self.biases: list[torch.Tensor] = []

        fan_in = self.input_features
        for spec in self.layers:
            weight = torch.empty((fan_in, spec.neurons), dtype=dtype)
            torch.nn.init.xavier_uniform_(weight)
            self.weights.append(weight)
            self.biases.append(torch.zeros(spec.neurons, dtype=dtype))
            fan_in = spec.neurons

    @property
    def output_features(self) -> int:
        return self.layers[-1].neurons

    def _as_batch(self, batch: Any) -> torch.Tensor:
        tensor = torch.as_tensor(batch, dtype=self.dtype)
        if tensor.dim() != 2:
            raise DimensionMismatchError(
                f"Predictor expects a 2-D batch [items x {self.input_features}], got shape {tuple(tensor.shape)}."
            )
        if tensor.shape[1] != self.input_features:
            raise DimensionMismatchError(
                f"Predictor fan-in is {self.input_features}, got batch width {tensor.shape[1]}."
            )
        return tensor

    def predict(self, batch: Any) -> torch.Tensor:
        output = self._as_batch(batch)
        with torch.no_grad():
            for spec, weight, bias in zip(self.layers, self.weights, self.biases):
                output = _ACTIVATIONS[spec.activation](output @ weight + bias)
        return output

    async def predict_async(self, batch: Any) -> torch.Tensor:
        # Pure CPU work; nothing to await.
        return self.predict(batch)


@dataclass
class ActivationRecord:
    amplitude: float
    frequency: float
    coherence: float
    timestamp: float  # ms since epoch


@dataclass
class NormalizedSignal:
    signal: float
    phase: float
    stability: float
    confidence: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "signal": round(self.signal, 6),
            "phase": round(self.phase, 6),
            "stability": round(self.stability, 6),
            "confidence": round(self.confidence, 6),
        }


class SynapticWeights(dict):
    """
    Feature-key -> weight map. A key seen for the first time is assigned
    ``rng.random()`` and keeps that weight from then on.
    """

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        super().__init__()
        self.rng = rng or random.Random()

    def __missing__(self, key: str) -> float:
        weight = self.rng.random()
        self[key] = weight
        return weight


class SignalProcessor:
    def __init__(
        self,
        *,
        max_history: int = 100,
        base_learning_rate: float = 0.01,
        context_window: int = 5,
        confidence_window: int = 10,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.weights = SynapticWeights(rng)
        self.activation_history: Deque[ActivationRecord] = deque(maxlen=max_history)
        self.base_learning_rate = base_learning_rate
        self.context_window = context_window
        self.confidence_window = confidence_window
        self.clock = clock

    @property
    def learning_rate(self) -> float:
        return self.base_learning_rate * math.exp(-len(self.activation_history) / 100.0)

    def signal_strength(self, signal: Mapping[str, float]) -> float:
        return sum(float(value) * self.weights[key] for key, value in signal.items())

    def context_modulation(self, context: Optional[Mapping[str, float]]) -> float:
        if context is None:
            return 1.0
        recent = list(self.activation_history)[-self.context_window:]
        if not recent:
            # empty window: the average is unbounded, so the cap applies
            return 2.0
        intensity = float(context.get("intensity", 0.0) or 0.0)
        weight = 1.0 + sum(record.coherence * intensity for record in recent)
        return min(weight / len(recent), 2.0)

    def _respond(self, strength: float, context: Optional[Mapping[str, float]]) -> ActivationRecord:
        base = math.tanh(strength)
        modulation = self.context_modulation(context)
        return ActivationRecord(
            amplitude=base * modulation,
            frequency=_logistic(strength) * math.pi * 2.0,
            coherence=abs(base) * modulation / (1 + len(self.activation_history)),
            timestamp=float(self.clock()) * 1000.0,
        )

    def _update_weights(self, response: ActivationRecord) -> None:
        update = response.amplitude * self.learning_rate
        for key in list(self.weights.keys()):
            self.weights[key] = _clamp(self.weights[key] + update, 0.0, 1.0)

    def _confidence(self, response: ActivationRecord) -> float:
        recent = list(self.activation_history)[-self.confidence_window:]
        average = sum(record.coherence for record in recent) / max(1, len(recent))
        return min(1.0, average * response.coherence)

    def process_signal(
        self,
        signal: Mapping[str, float],
        context: Optional[Mapping[str, float]] = None,
    ) -> NormalizedSignal:
        strength = self.signal_strength(signal)
        response = self._respond(strength, context)
        self._update_weights(response)
        self.activation_history.append(response)
        return NormalizedSignal(
            signal=response.amplitude,
            phase=response.frequency,
            stability=response.coherence,
            confidence=self._confidence(response),
        )


@dataclass
class CompoundState:
    name: str
    stability: float = 1.0
    potency: float = 1.0
    mutation: float = 1.0

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "stability": round(self.stability, 6),
            "potency": round(self.potency, 6),
            "mutation": round(self.mutation, 6),
        }


@dataclass
class AbilityPrediction:
    type: str
    probability: float
    currently_unlocked: bool
    stability_factor: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "type": self.type,
            "probability": round(self.probability, 6),
            "currentlyUnlocked": self.currently_unlocked,
            "stabilityFactor": round(self.stability_factor, 6),
        }


@dataclass
class AbilityForecast:
    type: str
    probability: float
    currently_unlocked: bool
    stability_factor: float
    mutation_rate: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "type": self.type,
            "probability": round(self.probability, 6),
            "currentlyUnlocked": self.currently_unlocked,
            "stabilityFactor": round(self.stability_factor, 6),
            "mutationRate": round(self.mutation_rate, 6),
        }


@dataclass
class StabilityProjection:
    primary: float
    secondary: EntropyLevel
    confidence: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "primary": round(self.primary, 6),
            "secondary": self.secondary.value,
            "confidence": round(self.confidence, 6),
        }


@dataclass
class OptimizationResult:
    compound: CompoundState
    abilities: list[AbilityForecast]
    stability: StabilityProjection
    confidence: float


@dataclass
class MutationHistoryEntry:
    timestamp: float  # ms since epoch
    compound: str
    optimization: OptimizationResult
    stability: StabilityScore


class CompoundOptimizer:
    """
    Momentum-smoothed update engine.

    The velocity grid is created on the first ``optimize`` call and persists
    for the lifetime of the instance; reusing one optimizer accumulates
    momentum across calls.
    """

    def __init__(
        self,
        settings: Optional[OptimizerSettings] = None,
        *,
        dims: int = STABILITY_DIMS,
        history_window: int = 5,
    ) -> None:
        self.settings = settings or OptimizerSettings()
        self.dims = dims
        self.history_window = history_window
        self.iterations = 0
        self.velocity: Optional[torch.Tensor] = None
        self.last_learning_rate = self.settings.learning_rate

    def entropy_score(self, compound_name: str, history: Sequence[Any]) -> float:
        recent = list(history)[-self.history_window:] if self.history_window > 0 else []
        same = sum(1 for entry in recent if entry.compound == compound_name)
        frequency = same / max(1, len(recent))
        return 1.0 - frequency * math.exp(-self.settings.decay * self.iterations)

    def optimization_matrix(
        self,
        stability: StabilityScore,
        predictions: Sequence[Any],
        entropy_score: float,
    ) -> torch.Tensor:
        matrix = torch.zeros((self.dims, self.dims), dtype=torch.float64)
        for i, factor in enumerate(list(stability.factors)[: self.dims]):
            matrix[i, i] = float(factor) * self.settings.learning_rate

        # Only the leading 4x4 block receives prediction weighting.
        for i, prediction in enumerate(list(predictions)[: PREDICTION_BLOCK * PREDICTION_BLOCK]):
            probability = float(getattr(prediction, "probability", prediction))
            matrix[i // PREDICTION_BLOCK, i % PREDICTION_BLOCK] *= 1.0 + probability * entropy_score
        return matrix

    def apply_momentum(self, matrix: torch.Tensor) -> torch.Tensor:
        if self.velocity is None:
            self.velocity = torch.zeros_like(matrix)
        momentum = self.settings.momentum
        self.velocity = momentum * self.velocity + (1.0 - momentum) * matrix
        return self.velocity.clone()

    def synthesize_compound(self, compound: CompoundState, updates: torch.Tensor) -> CompoundState:
        return replace(
            compound,
            stability=compound.stability * (1.0 + float(updates[0, 0])),
            potency=compound.potency * (1.0 + float(updates[1, 1])),
            mutation=compound.mutation * (1.0 + float(updates[2, 2])),
        )

    def forecast_abilities(self, compound: CompoundState, predictions: Sequence[Any]) -> list[AbilityForecast]:
        forecasts: list[AbilityForecast] = []
        for prediction in predictions:
            probability = float(getattr(prediction, "probability", prediction))
            forecasts.append(
                AbilityForecast(
                    type=getattr(prediction, "type", UNKNOWN_ABILITY),
                    probability=probability * (1.0 + compound.potency),
                    currently_unlocked=bool(getattr(prediction, "currently_unlocked", False)),
                    stability_factor=compound.stability,
                    mutation_rate=compound.mutation,
                )
            )
        return forecasts

    def project_stability(self, stability: StabilityScore, updates: torch.Tensor) -> StabilityProjection:
        row_sums = torch.abs(updates).sum(dim=1)
        return StabilityProjection(
            primary=stability.overall_stability * (1.0 + float(row_sums[0])),
            secondary=stability.entropy_level,
            confidence=1.0 - math.exp(-float(row_sums.sum())),
        )

    def confidence(self, updates: torch.Tensor, history: Sequence[Any]) -> float:
        magnitude = float(torch.abs(updates).sum())
        return math.exp(-magnitude) * (1.0 - 1.0 / (len(history) + 1))

    def optimize(
        self,
        *,
        compound: CompoundState,
        stability: StabilityScore,
        predictions: Sequence[Any],
        history: Sequence[Any] = (),
    ) -> OptimizationResult:
        self.iterations += 1
        # Recorded for inspection; the matrix step uses the base rate.
        self.last_learning_rate = self.settings.learning_rate / (1.0 + self.settings.decay * self.iterations)

        entropy_score = self.entropy_score(compound.name, history)
        matrix = self.optimization_matrix(stability, predictions, entropy_score)
        updates = self.apply_momentum(matrix)
        optimized = self.synthesize_compound(compound, updates)

        result = OptimizationResult(
            compound=optimized,
            abilities=self.forecast_abilities(optimized, predictions),
            stability=self.project_stability(stability, updates),
            confidence=self.confidence(updates, history),
        )
        logger.debug(
            "optimize #%d compound=%s entropy_score=%.6f confidence=%.6f",
            self.iterations,
            compound.name,
            entropy_score,
            result.confidence,
        )
        return result


@dataclass
class OutcomeRecord:
    optimized_compound: CompoundState
    predicted_abilities: list[AbilityForecast]
    stability_metrics: StabilityProjection
    confidence: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "optimizedCompound": self.optimized_compound.to_dict(),
            "predictedAbilities": [ability.to_dict() for ability in self.predicted_abilities],
            "stabilityMetrics": self.stability_metrics.to_dict(),
            "confidence": round(self.confidence, 6),
        }


class CompoundOrchestrator:
    """
    Runs signature -> quantum state -> stability -> ability matrix -> predictor
    -> optimizer for one entity and keeps a bounded mutation history.
    """

    def __init__(
        self,
        config: Optional[EvolutionConfig] = None,
        *,
        predictor: Optional[FeedForwardPredictor] = None,
        evaluator: Optional[StabilityEvaluator] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or EvolutionConfig()
        self.clock = clock
        self.evaluator = evaluator or StabilityEvaluator(self.config, clock=clock)
        self.predictor = predictor or FeedForwardPredictor(
            self.config.layers,
            input_features=self.config.input_features,
        )
        self.mutation_history: Deque[MutationHistoryEntry] = deque(maxlen=self.config.history_capacity)
        self.last_optimizer: Optional[CompoundOptimizer] = None
        self._shared_optimizer: Optional[CompoundOptimizer] = None

    def recent_history(self, window: Optional[int] = None) -> list[MutationHistoryEntry]:
        size = self.config.history_window if window is None else int(window)
        if size <= 0:
            return []
        return list(self.mutation_history)[-size:]

    def _coerce_entity(self, entity: EntitySnapshot | Mapping[str, Any]) -> EntitySnapshot:
        if isinstance(entity, EntitySnapshot):
            return entity
        try:
            return EntitySnapshot.from_mapping(entity)
        except InvalidEntityError as exc:
            logger.warning("Rejected entity snapshot: %s", exc)
            raise

    def ability_matrix(self, entity: EntitySnapshot) -> torch.Tensor:
        flags = [1.0 if unlocked else 0.0 for unlocked in entity.unlocked_abilities.values()]
        rows: list[list[float]] = []
        for start in range(0, len(flags), PREDICTION_BLOCK):
            row = flags[start : start + PREDICTION_BLOCK]
            row.extend([0.0] * (PREDICTION_BLOCK - len(row)))
            rows.append(row)
        return torch.tensor(rows, dtype=torch.float32)

    def prepare_predictor_input(self, ability_matrix: torch.Tensor) -> torch.Tensor:
        flat = ability_matrix.flatten().to(torch.float32)
        peak = float(flat.max()) if flat.numel() else 0.0
        if peak > 0.0:
            flat = flat / peak
        else:
            warnings.warn(
                "Ability matrix has no unlocked ability; normalization skipped.",
                DegenerateNormalizationWarning,
                stacklevel=3,
            )
            logger.debug("degenerate ability matrix, passing zeros through")

        width = self.predictor.input_features
        if flat.numel() < width:
            flat = torch.nn.functional.pad(flat, (0, width - flat.numel()))
        # Wider inputs are left as-is so the predictor rejects them.
        return flat.unsqueeze(0)

    def ability_stability(self, entity: EntitySnapshot) -> float:
        health_factor = entity.health / 100.0
        mutation_penalty = entity.mutation_count * 0.05
        return _clamp(0.5 * health_factor - mutation_penalty, 0.0, 1.0)

    def process_predictions(self, raw: torch.Tensor, entity: EntitySnapshot) -> list[AbilityPrediction]:
        catalog = self.config.ability_catalog
        values = raw[0].tolist() if raw.dim() == 2 else raw.tolist()
        stability_factor = self.ability_stability(entity)
        predictions: list[AbilityPrediction] = []
        for i, value in enumerate(values):
            known = i < len(catalog)
            ability_type = catalog[i] if known else UNKNOWN_ABILITY
            predictions.append(
                AbilityPrediction(
                    type=ability_type,
                    probability=float(value),
                    currently_unlocked=known and entity.unlocked_abilities.get(ability_type, False),
                    stability_factor=stability_factor,
                )
            )
        return predictions

    def optimizer_for_call(self) -> CompoundOptimizer:
        if self.config.optimizer_mode is OptimizerMode.SHARED:
            if self._shared_optimizer is None:
                self._shared_optimizer = CompoundOptimizer(
                    self.config.optimizer,
                    history_window=self.config.history_window,
                )
            return self._shared_optimizer
        return CompoundOptimizer(self.config.optimizer, history_window=self.config.history_window)

    def _finish(
        self,
        entity: EntitySnapshot,
        signature: CompoundSignature,
        stability: StabilityScore,
        predictions: list[AbilityPrediction],
    ) -> OutcomeRecord:
        optimizer = self.optimizer_for_call()
        self.last_optimizer = optimizer
        compound = CompoundState(
            name=entity.compound,
            stability=stability.overall_stability,
            potency=1.0,
            mutation=signature.mutation,
        )
        result = optimizer.optimize(
            compound=compound,
            stability=stability,
            predictions=predictions,
            history=tuple(self.mutation_history),
        )

        self.mutation_history.append(
            MutationHistoryEntry(
                timestamp=float(self.clock()) * 1000.0,
                compound=entity.compound,
                optimization=result,
                stability=stability,
            )
        )
        logger.debug(
            "analysis compound=%s overall=%.6f level=%s confidence=%.6f history=%d",
            entity.compound,
            stability.overall_stability,
            stability.entropy_level.value,
            result.confidence,
            len(self.mutation_history),
        )
        return OutcomeRecord(
            optimized_compound=result.compound,
            predicted_abilities=result.abilities,
            stability_metrics=result.stability,
            confidence=result.confidence,
        )

    def analyze_compound(self, entity: EntitySnapshot | Mapping[str, Any]) -> OutcomeRecord:
        snapshot = self._coerce_entity(entity)
        signature, _quantum_state, stability = self.evaluator.assess(snapshot)
        batch = self.prepare_predictor_input(self.ability_matrix(snapshot))
        raw = self.predictor.predict(batch)
        return self._finish(snapshot, signature, stability, self.process_predictions(raw, snapshot))

    async def analyze_compound_async(self, entity: EntitySnapshot | Mapping[str, Any]) -> OutcomeRecord:
        snapshot = self._coerce_entity(entity)
        signature, _quantum_state, stability = self.evaluator.assess(snapshot)
        batch = self.prepare_predictor_input(self.ability_matrix(snapshot))
        raw = await self.predictor.predict_async(batch)
        return self._finish(snapshot, signature, stability, self.process_predictions(raw, snapshot))


DEMO_ENTITY: Mapping[str, Any] = MappingProxyType(
    {
        "compound": Compound.TITAN_SERUM.value,
        "health": 80,
        "size": 12,
        "initialSize": 10,
        "speed": 1.2,
        "mutations": [],
        "unlockedAbilities": {"mutation": False, "strength": True},
        "active": True,
        "isTransformed": False,
    }
)


async def run_evolution_demo(
    runs: int = 2,
    *,
    entity: Optional[Mapping[str, Any]] = None,
    config: Optional[EvolutionConfig] = None,
) -> Dict[str, object]:
    orchestrator = CompoundOrchestrator(config)
    snapshot = orchestrator._coerce_entity(entity if entity is not None else DEMO_ENTITY)
    outcomes: list[Dict[str, object]] = []
    for _ in range(max(1, int(runs))):
        outcome = await orchestrator.analyze_compound_async(snapshot)
        outcomes.append(outcome.to_dict())

    latest = orchestrator.mutation_history[-1]
    return {
        "compound": snapshot.compound,
        "runs": len(outcomes),
        "history_length": len(orchestrator.mutation_history),
        "stability": latest.stability.to_dict(),
        "config": orchestrator.config.to_dict(),
        "outcomes": outcomes,
    }


def run_evolution_demo_sync(
    runs: int = 2,
    *,
    entity: Optional[Mapping[str, Any]] = None,
    config: Optional[EvolutionConfig] = None,
) -> Dict[str, object]:
    return asyncio.run(run_evolution_demo(runs, entity=entity, config=config))


def run_signal_demo(
    signal: Mapping[str, float],
    *,
    intensity: Optional[float] = None,
    repeat: int = 1,
    seed: Optional[int] = None,
) -> Dict[str, object]:
    processor = SignalProcessor(rng=random.Random(seed))
    context = None if intensity is None else {"intensity": float(intensity)}
    outputs = [processor.process_signal(signal, context).to_dict() for _ in range(max(1, int(repeat)))]
    return {
        "signals": outputs,
        "weights": {key: round(weight, 6) for key, weight in processor.weights.items()},
        "history_length": len(processor.activation_history),
    }


if __name__ == "__main__":
    result = run_evolution_demo_sync(2)
    logger.info("Compound evolution result: %s", result)
