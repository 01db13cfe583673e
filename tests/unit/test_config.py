"""Unit tests for configuration classes."""

import pytest

from celltype_reference.core.classification import (
    ClassificationConfig,
    NeighborConfig,
    PruningConfig,
    ReferenceConfig,
    TrainingConfig,
)


class TestTrainingConfig:
    """Tests for TrainingConfig dataclass."""

    def test_default_values(self):
        """Test default configuration values."""
        config = TrainingConfig()
        assert config.genes == "de"
        assert config.sd_thresh == 1.0
        assert config.de_n is None
        assert config.layer is None
        assert config.check_missing is True
        assert config.n_workers == 1


class TestNeighborConfig:
    """Tests for NeighborConfig dataclass."""

    def test_default_is_euclidean(self):
        """Test the default metric passes validation."""
        config = NeighborConfig()
        assert config.metric == "euclidean"
        config.validate()

    def test_non_euclidean_rejected(self):
        """Test other metrics fail validation."""
        with pytest.raises(ValueError):
            NeighborConfig(metric="manhattan").validate()


class TestClassificationConfig:
    """Tests for ClassificationConfig dataclass."""

    def test_default_values(self):
        """Test default configuration values."""
        config = ClassificationConfig()
        assert config.quantile == 0.8
        assert config.fine_tune is True
        assert config.tune_thresh == 0.05
        assert config.sd_thresh is None
        assert config.prune is True
        assert config.batch_size == 500

    def test_validate(self):
        """Test out-of-range values are rejected."""
        ClassificationConfig(quantile=1.0).validate()
        with pytest.raises(ValueError):
            ClassificationConfig(quantile=0.0).validate()
        with pytest.raises(ValueError):
            ClassificationConfig(tune_thresh=-1.0).validate()
        with pytest.raises(ValueError):
            ClassificationConfig(batch_size=0).validate()


class TestPruningConfig:
    """Tests for PruningConfig dataclass."""

    def test_default_values(self):
        """Test default configuration values."""
        config = PruningConfig()
        assert config.nmads == 3.0
        assert config.min_diff_med is None
        assert config.min_diff_next == 0.05


class TestReferenceConfig:
    """Tests for the master configuration."""

    def test_default(self):
        """Test default() builds every section."""
        config = ReferenceConfig.default()
        assert config.training.genes == "de"
        assert config.neighbors.algorithm == "auto"
        assert config.classification.quantile == 0.8
        assert config.pruning.nmads == 3.0

    def test_from_yaml(self, sample_config_yaml):
        """Test loading config from YAML with a reference section."""
        config = ReferenceConfig.from_yaml(sample_config_yaml)
        assert config.training.genes == "sd"
        assert config.training.sd_thresh == 0.5
        assert config.neighbors.algorithm == "brute"
        assert config.classification.quantile == 0.9
        assert config.classification.tune_thresh == 0.1
        assert config.pruning.nmads == 2.5
        # Unspecified values keep their defaults
        assert config.classification.fine_tune is True

    def test_from_yaml_without_section(self, tmp_path):
        """Test sections may sit at the top level."""
        path = tmp_path / "flat.yaml"
        path.write_text("pruning:\n  min_diff_next: 0.1\n")
        config = ReferenceConfig.from_yaml(path)
        assert config.pruning.min_diff_next == 0.1

    def test_from_yaml_empty(self, tmp_path):
        """Test an empty file gives defaults."""
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert ReferenceConfig.from_yaml(path).to_dict() == ReferenceConfig().to_dict()

    def test_unknown_key(self, tmp_path):
        """Test unknown keys are rejected."""
        path = tmp_path / "bad.yaml"
        path.write_text("training:\n  gens: sd\n")
        with pytest.raises(TypeError):
            ReferenceConfig.from_yaml(path)

    def test_missing_file(self, tmp_path):
        """Test a missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            ReferenceConfig.from_yaml(tmp_path / "missing.yaml")

    def test_to_dict(self):
        """Test to_dict covers every section."""
        data = ReferenceConfig().to_dict()
        assert set(data) == {"training", "neighbors", "classification", "pruning"}
        assert data["classification"]["quantile"] == 0.8
        assert data["neighbors"]["metric"] == "euclidean"
