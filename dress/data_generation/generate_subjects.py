"""
Synthetic Clinical Subject Generator with Dask

Generates nested subject records (demographics, exams, labs, history,
admissions, medications and outcomes) for exercising the modeling toolkit.
Batches are built as dask delayed tasks, each with its own seed so the output
only depends on the generator seed and the batch size.
"""

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import dask
import numpy as np
import yaml
from dask.delayed import delayed
from faker import Faker
from scipy.special import expit

from dress.utils.accessor import resolve

logger = logging.getLogger(__name__)

DEFAULT_MISSING_RATES = {
    'Labs.Cholesterol': 0.10,   # not drawn at every visit
    'Labs.Bilirubin': 0.03,
    'Exams.BMI': 0.05,          # failed measurements
    'History.Smoking': 0.02,
}


class SubjectGenerator:
    """Generate synthetic nested clinical subjects."""

    icd_codes = ['I10', 'E11', 'I25', 'J44', 'N18', 'K74', 'I48', 'E78', 'K21', 'I50']
    medications = [
        'Metformin', 'Lisinopril', 'Atorvastatin', 'Amlodipine', 'Ursodiol',
        'Metoprolol', 'Furosemide', 'Prednisone', 'Omeprazole', 'Spironolactone',
    ]

    def __init__(self, seed: int = 42, missing_value_rates: Optional[Dict[str, float]] = None):
        """Initialize the generator.

        Args:
            seed: Random seed for reproducibility
            missing_value_rates: Probability per feature path that the value is
                missing (set to ``None``). Defaults to ``DEFAULT_MISSING_RATES``.
        """
        self.seed = seed
        self.missing_value_rates = dict(DEFAULT_MISSING_RATES if missing_value_rates is None else missing_value_rates)
        for path, rate in self.missing_value_rates.items():
            if not 0 <= rate <= 1:
                raise ValueError(f"Missing rate for '{path}' must be within [0, 1], got {rate}")

    def generate_subject(self, index: int, rng: np.random.Generator, fake: Faker) -> Dict[str, Any]:
        """One subject with correlated measurements and a risk-driven outcome."""
        sex = rng.choice(['M', 'F'], p=[0.48, 0.52])
        age = int(rng.integers(25, 90))
        smoking_prob = 0.25 if sex == 'M' else 0.18
        smoking = rng.choice(['Never', 'Former', 'Current'],
                             p=[1 - smoking_prob, smoking_prob * 0.6, smoking_prob * 0.4])

        bmi = float(np.clip(rng.normal(27.0 + (age - 50) * 0.05, 4.8), 16, 50))
        systolic = float(np.clip(rng.normal(118 + (age - 40) * 0.5, 15), 90, 200))
        diastolic = float(np.clip(rng.normal(78 + (age - 40) * 0.2, 10), 55, min(120, systolic - 10)))
        bilirubin = float(np.clip(rng.lognormal(0.1, 0.7), 0.2, 25))
        albumin = float(np.clip(rng.normal(3.6 - 0.15 * np.log(bilirubin + 1), 0.4), 1.8, 5.2))
        cholesterol = float(np.clip(rng.normal(200 + (age - 40) * 0.8, 35), 110, 420))
        diabetes = bool(rng.random() < 0.08 + max(0.0, bmi - 27) * 0.02)
        hypertension = bool(systolic > 140 or rng.random() < 0.1)

        n_admissions = int(rng.poisson(0.5 + age / 40))
        start_year = 2024 - int(rng.integers(1, 12))
        admissions = [
            {'Year': start_year + int(rng.integers(0, 10)), 'Diagnosis': str(rng.choice(self.icd_codes))}
            for _ in range(n_admissions)
        ]
        admissions.sort(key=lambda a: a['Year'])
        n_medications = int(min(len(self.medications), rng.poisson(1 + age / 50)))
        medications = sorted(rng.choice(self.medications, size=n_medications, replace=False).tolist())

        risk = (
            -4.2
            + 0.035 * (age - 50)
            + 0.45 * np.log(bilirubin)
            - 0.9 * (albumin - 3.5)
            + 0.4 * diabetes
            + 0.5 * (smoking == 'Current')
            + 0.15 * n_admissions
        )
        death = bool(rng.random() < expit(risk))
        survival = float(np.round(rng.exponential(120 / (1 + np.exp(risk))), 1))

        return {
            'Id': f"S{index:06d}",
            'Site': fake.city(),
            'Enrolled': fake.date_between(start_date='-10y', end_date='today').isoformat(),
            'Demographics': {'Age': age, 'Sex': str(sex)},
            'Exams': {
                'BMI': round(bmi, 1),
                'SystolicBP': round(systolic, 1),
                'DiastolicBP': round(diastolic, 1),
            },
            'Labs': {
                'Bilirubin': round(bilirubin, 2),
                'Albumin': round(albumin, 2),
                'Cholesterol': round(cholesterol, 1),
            },
            'History': {'Smoking': str(smoking), 'Diabetes': diabetes, 'Hypertension': hypertension},
            'Admissions': admissions,
            'Medications': medications,
            'Outcome': {'Death': death, 'Survival': survival},
        }

    def apply_missing_values(self, subject: Dict[str, Any], rng: np.random.Generator) -> Dict[str, Any]:
        """Blank out leaf values in place according to ``missing_value_rates``."""
        for path, rate in self.missing_value_rates.items():
            if rate <= 0 or rng.random() >= rate:
                continue
            *parents, leaf = path.split('.')
            container = resolve(subject, '.'.join(parents)) if parents else subject
            if isinstance(container, dict) and leaf in container:
                container[leaf] = None
        return subject

    def generate_batch(self, start: int, count: int, seed: int) -> List[Dict[str, Any]]:
        """Subjects ``start .. start + count - 1`` from their own seed."""
        rng = np.random.default_rng(seed)
        fake = Faker()
        fake.seed_instance(seed)
        return [
            self.apply_missing_values(self.generate_subject(start + i, rng, fake), rng)
            for i in range(count)
        ]

    def generate_subjects(self, num_subjects: int, batch_size: int = 1000) -> List[Dict[str, Any]]:
        """Generate subjects in dask-delayed batches and return them in index order."""
        if num_subjects < 0 or batch_size < 1:
            raise ValueError("num_subjects must be >= 0 and batch_size >= 1")
        starts = list(range(0, num_subjects, batch_size))
        seeds = [int(s.generate_state(1)[0]) for s in np.random.SeedSequence(self.seed).spawn(len(starts))]

        tasks = [
            delayed(self.generate_batch)(start, min(batch_size, num_subjects - start), seed)
            for start, seed in zip(starts, seeds)
        ]
        logger.info(f"Generating {num_subjects:,} subjects in {len(tasks)} delayed batches")
        batches = dask.compute(*tasks)
        return [subject for batch in batches for subject in batch]

    def summarize(self, subjects: List[Dict[str, Any]]) -> Dict[str, Any]:
        deaths = [d for d in (resolve(s, 'Outcome.Death') for s in subjects) if d is not None]
        return {
            'total_subjects': len(subjects),
            'death_prevalence': float(np.mean(deaths)) if deaths else None,
            'missing_values': {
                path: sum(resolve(s, path) is None for s in subjects)
                for path in self.missing_value_rates
            },
            'missing_value_configuration': self.missing_value_rates,
            'seed': self.seed,
        }


def save_subjects(subjects: List[Dict[str, Any]], path: Path):
    """Write a JSON array (``.json``) or JSON lines (anything else)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        if path.suffix.lower() == '.json':
            json.dump(subjects, f)
        else:
            for subject in subjects:
                f.write(json.dumps(subject) + '\n')
    logger.info(f"Saved {len(subjects)} subjects to {path}")


def main():
    """Main function for command-line usage."""
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser(description="Generate synthetic nested clinical subjects with Dask")
    parser.add_argument("--num_subjects", type=int, default=1000,
                        help="Number of subjects to generate")
    parser.add_argument("--output", type=str, default="./data/subjects.jsonl",
                        help="Output file (.json array or .jsonl)")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument("--batch_size", type=int, default=1000,
                        help="Subjects per dask batch")
    parser.add_argument("--config", type=str, default="./config/training_config.yaml",
                        help="Configuration file")
    args = parser.parse_args()

    num_subjects, batch_size, seed, missing_rates = args.num_subjects, args.batch_size, args.seed, None
    if Path(args.config).exists():
        with open(args.config, 'r') as f:
            config = yaml.safe_load(f) or {}

        data_config = config.get('data_generation', {})
        num_subjects = data_config.get('num_subjects', num_subjects)
        batch_size = data_config.get('batch_size', batch_size)
        seed = data_config.get('seed', seed)

        missing_config = data_config.get('missing_values', {})
        if missing_config.get('enabled', True):
            missing_rates = missing_config.get('rates')
        else:
            missing_rates = {}

    generator = SubjectGenerator(seed=seed, missing_value_rates=missing_rates)
    subjects = generator.generate_subjects(num_subjects, batch_size=batch_size)

    output_path = Path(args.output)
    save_subjects(subjects, output_path)

    summary_path = output_path.parent / "data_summary.yaml"
    with open(summary_path, 'w') as f:
        yaml.dump(generator.summarize(subjects), f, default_flow_style=False)
    logger.info(f"Summary saved to {summary_path}")


if __name__ == "__main__":
    main()
