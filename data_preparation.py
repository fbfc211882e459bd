"""
Home Credit Default Risk - Data Preparation
===========================================

Reusable functions for cleaning, imputing, engineering and aggregating the
Home Credit tables. Statistics are fitted on the training table only
(fit_* functions) and applied unchanged to both training and test tables
(apply_* / prepare_* functions), so test data never leaks into the parameters
used to process training data.

Column names are expected in lowercase snake-case (normalized upstream).

Author: Clahan Tran
Date: October 18, 2026
"""

from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import polars as pl


# ============================================================================
# GLOBAL CONFIGURATION
# ============================================================================

ID_COLUMN = 'sk_id_curr'
TARGET_COLUMN = 'target'

EXT_SOURCE_COLUMNS = ('ext_source_1', 'ext_source_2', 'ext_source_3')

# Placeholder used in days_employed for unknown employment
DAYS_EMPLOYED_SENTINEL = 365243
DAYS_PER_YEAR = 365

AGE_BREAKS = (18, 30, 40, 50, 65, 100)
AGE_GROUP_LABELS = ('[18,30]', '(30,40]', '(40,50]', '(50,65]', '(65,100]')


# ============================================================================
# ERRORS
# ============================================================================

class ColumnMismatchError(ValueError):
    """Prepared train and test tables do not share the same columns."""


# ============================================================================
# MISSING VALUE STATISTICS
# ============================================================================

@dataclass(frozen=True)
class MissingValueStats:
    """
    Training medians for the EXT_SOURCE scores.

    Instances are immutable: fit once on the training table with
    fit_missing_values() and pass the same instance to every
    apply_missing_values() / prepare_application_data() call.
    A median of None means the training column had no observed values.
    """
    ext_source_1_median: Optional[float]
    ext_source_2_median: Optional[float]
    ext_source_3_median: Optional[float]

    def median_for(self, col: str) -> Optional[float]:
        if col not in EXT_SOURCE_COLUMNS:
            raise KeyError(col)
        return getattr(self, f'{col}_median')

    def as_dict(self) -> Dict[str, Optional[float]]:
        return {col: self.median_for(col) for col in EXT_SOURCE_COLUMNS}


# ============================================================================
# DATA CLEANING FUNCTIONS
# ============================================================================

def fix_application_anomalies(df: pl.DataFrame) -> pl.DataFrame:
    """
    Fix known anomalies and convert day counts to years.

    - days_employed == 365243 is a placeholder for unknown employment and is
      replaced with null
    - age_years and employed_years are the negated day counts divided by 365

    Parameters:
    -----------
    df : pl.DataFrame
        Application data with days_birth and days_employed columns

    Returns:
    --------
    pl.DataFrame
        Dataframe with cleaned days_employed plus age_years and employed_years
    """
    anomaly_count = df.select((pl.col('days_employed') == DAYS_EMPLOYED_SENTINEL).sum()).item()

    df = df.with_columns(
        pl.when(pl.col('days_employed') == DAYS_EMPLOYED_SENTINEL)
        .then(None)
        .otherwise(pl.col('days_employed'))
        .alias('days_employed')
    )

    # Day counts are negative (counted back from the application date);
    # an all-null column arrives with dtype Null, which cannot be negated
    df = df.with_columns([
        (-pl.col('days_birth').cast(pl.Float64) / DAYS_PER_YEAR).alias('age_years'),
        (-pl.col('days_employed').cast(pl.Float64) / DAYS_PER_YEAR).alias('employed_years'),
    ])

    print(f"  ✓ Employment anomaly replaced with null: {anomaly_count:,} cases")

    return df


def fit_missing_values(train_df: pl.DataFrame) -> MissingValueStats:
    """
    Compute EXT_SOURCE medians from the training table.

    Only ever call this on training data. The returned stats are applied
    unchanged to the test table; refitting on test data leaks information.

    Parameters:
    -----------
    train_df : pl.DataFrame
        Training application data

    Returns:
    --------
    MissingValueStats
        Frozen medians (None for a column with no observed values)
    """
    medians = train_df.select([pl.col(col).median() for col in EXT_SOURCE_COLUMNS]).row(0)
    medians = [float(m) if m is not None else None for m in medians]

    stats = MissingValueStats(*medians)
    print(f"  ✓ Missing value stats fitted on {train_df.height:,} training rows: {stats.as_dict()}")

    return stats


def apply_missing_values(df: pl.DataFrame, stats: MissingValueStats) -> pl.DataFrame:
    """
    Impute EXT_SOURCE scores with training medians and add missing indicators.

    The indicator (<col>_missing) is derived from the original column in the
    same pass as the imputation. When the fitted median is None the nulls are
    left in place.

    Parameters:
    -----------
    df : pl.DataFrame
        Training or test application data
    stats : MissingValueStats
        Stats fitted on the training table

    Returns:
    --------
    pl.DataFrame
        Dataframe with imputed EXT_SOURCE values and missing flags
    """
    if not isinstance(stats, MissingValueStats):
        raise TypeError(
            f"stats must be a MissingValueStats fitted on training data, got {type(stats).__name__}"
        )

    exprs = []
    for col in EXT_SOURCE_COLUMNS:
        median_val = stats.median_for(col)
        exprs.append(pl.col(col).is_null().alias(f'{col}_missing'))
        if median_val is not None:
            exprs.append(pl.col(col).fill_null(median_val).alias(col))

    missing_counts = df.select([pl.col(col).null_count() for col in EXT_SOURCE_COLUMNS]).row(0)
    df = df.with_columns(exprs)

    for col, missing_count in zip(EXT_SOURCE_COLUMNS, missing_counts):
        median_val = stats.median_for(col)
        if median_val is None:
            print(f"  ✓ {col}: {missing_count:,} missing values left as null (no training median)")
        else:
            print(f"  ✓ {col}: {missing_count:,} missing values imputed with median = {median_val:.4f}")

    return df


# ============================================================================
# FEATURE ENGINEERING FUNCTIONS
# ============================================================================

def _age_group_expr() -> pl.Expr:
    # [18,30] closed on both ends, (lower,upper] afterwards
    age = pl.col('age_years')
    bins = list(zip(AGE_BREAKS[:-1], AGE_BREAKS[1:], AGE_GROUP_LABELS))

    lower, upper, label = bins[0]
    expr = pl.when((age >= lower) & (age <= upper)).then(pl.lit(label))
    for lower, upper, label in bins[1:]:
        expr = expr.when((age > lower) & (age <= upper)).then(pl.lit(label))

    return expr.otherwise(pl.lit(None, dtype=pl.String)).cast(pl.Enum(list(AGE_GROUP_LABELS)))


def engineer_application_features(df: pl.DataFrame) -> pl.DataFrame:
    """
    Create deterministic ratio and binned features.

    No parameters are fitted, so the same transform applies to train and
    test. Division by zero yields inf/NaN and null operands yield null.

    Features created:
    - credit_income_ratio: Loan size relative to annual income
    - annuity_income_ratio: Payment burden
    - credit_annuity_ratio: Loan size relative to the annuity
    - income_per_person: Income per family member
    - age_group: age_years binned on AGE_BREAKS

    Args:
        df: Application data after anomaly fixing and imputation

    Returns:
        Dataframe with engineered features
    """
    df = df.with_columns([
        (pl.col('amt_credit') / pl.col('amt_income_total')).alias('credit_income_ratio'),
        (pl.col('amt_annuity') / pl.col('amt_income_total')).alias('annuity_income_ratio'),
        (pl.col('amt_credit') / pl.col('amt_annuity')).alias('credit_annuity_ratio'),
        (pl.col('amt_income_total') / pl.col('cnt_fam_members')).alias('income_per_person'),
        _age_group_expr().alias('age_group'),
    ])

    print("  ✓ Application features engineered: 4 ratios and age_group")

    return df


# ============================================================================
# SUPPLEMENTARY DATA AGGREGATION FUNCTIONS
# ============================================================================

def aggregate_bureau(bureau: pl.DataFrame) -> pl.DataFrame:
    """
    Aggregate bureau.csv to applicant level (sk_id_curr).

    Features created:
    - bureau_count: Number of prior credits
    - bureau_active / bureau_closed: Credits by status
    - bureau_debt_sum / bureau_overdue_sum: Total debt and overdue amounts
      (nulls contribute 0)

    Parameters:
    -----------
    bureau : pl.DataFrame
        Bureau credit history data

    Returns:
    --------
    pl.DataFrame
        One row per sk_id_curr present in the input
    """
    bureau_agg = bureau.group_by(ID_COLUMN, maintain_order=True).agg([
        pl.len().alias('bureau_count'),
        (pl.col('credit_active') == 'Active').sum().alias('bureau_active'),
        (pl.col('credit_active') == 'Closed').sum().alias('bureau_closed'),
        pl.col('amt_credit_sum_debt').sum().alias('bureau_debt_sum'),
        pl.col('amt_credit_sum_overdue').sum().alias('bureau_overdue_sum'),
    ])

    print(f"  ✓ Bureau data aggregated: {bureau_agg.shape[1]} features for {bureau_agg.shape[0]:,} applicants")

    return bureau_agg


def aggregate_previous_application(prev_app: pl.DataFrame) -> pl.DataFrame:
    """
    Aggregate previous_application.csv to applicant level.

    Rates are computed over rows with a known name_contract_status; an
    applicant whose statuses are all null gets null rates.
    """
    status = pl.col('name_contract_status')
    prev_agg = prev_app.group_by(ID_COLUMN, maintain_order=True).agg([
        pl.len().alias('prev_app_count'),
        (status == 'Approved').cast(pl.Float64).mean().alias('prev_approved_rate'),
        (status == 'Refused').cast(pl.Float64).mean().alias('prev_refused_rate'),
    ])

    print(f"  ✓ Previous application data aggregated: {prev_agg.shape[1]} features for {prev_agg.shape[0]:,} applicants")

    return prev_agg


def aggregate_installments_payments(installments: pl.DataFrame) -> pl.DataFrame:
    """
    Aggregate installments_payments.csv to applicant level.

    Features created:
    - inst_count: Number of installment records
    - late_payment_rate: Share of payments made after the due day
    - avg_days_late: Mean of days_entry_payment - days_instalment
    - avg_pay_diff: Mean of amt_payment - amt_instalment

    Parameters:
    -----------
    installments : pl.DataFrame
        Installment payment history

    Returns:
    --------
    pl.DataFrame
        Aggregated installment features
    """
    installments = installments.with_columns([
        # Positive = paid after the due day
        (pl.col('days_entry_payment') - pl.col('days_instalment')).alias('days_late'),
        (pl.col('amt_payment') - pl.col('amt_instalment')).alias('pay_diff'),
    ])

    inst_agg = installments.group_by(ID_COLUMN, maintain_order=True).agg([
        pl.len().alias('inst_count'),
        (pl.col('days_late') > 0).cast(pl.Float64).mean().alias('late_payment_rate'),
        pl.col('days_late').cast(pl.Float64).mean().alias('avg_days_late'),
        pl.col('pay_diff').cast(pl.Float64).mean().alias('avg_pay_diff'),
    ])

    print(f"  ✓ Installments data aggregated: {inst_agg.shape[1]} features for {inst_agg.shape[0]:,} applicants")

    return inst_agg


# ============================================================================
# PIPELINE ORCHESTRATION FUNCTIONS
# ============================================================================

def prepare_application_data(
    app_df: pl.DataFrame,
    stats: MissingValueStats,
    bureau_agg: Optional[pl.DataFrame] = None,
    prev_agg: Optional[pl.DataFrame] = None,
    inst_agg: Optional[pl.DataFrame] = None
) -> pl.DataFrame:
    """
    Prepare one application table (train or test).

    Steps:
    1. Fix anomalies
    2. Apply missing value stats (fitted on train, never refitted here)
    3. Engineer application features
    4. Left-join each supplied aggregate table on sk_id_curr

    Every application row is kept in its original order. Applicants without
    a matching aggregate row get nulls in the joined columns.

    Parameters:
    -----------
    app_df : pl.DataFrame
        Raw application data
    stats : MissingValueStats
        Stats fitted on the training table
    bureau_agg, prev_agg, inst_agg : Optional[pl.DataFrame]
        Output of the aggregate_* functions; skipped when None

    Returns:
    --------
    pl.DataFrame
        Prepared application data
    """
    out = fix_application_anomalies(app_df)
    out = apply_missing_values(out, stats)
    out = engineer_application_features(out)

    for name, agg in (('bureau', bureau_agg), ('previous_application', prev_agg),
                      ('installments_payments', inst_agg)):
        if agg is None:
            continue
        out = out.join(agg, on=ID_COLUMN, how='left', validate='m:1', maintain_order='left')

    print(f"  ✓ Prepared dataset: {out.shape[0]:,} rows × {out.shape[1]} columns")

    return out


def check_column_consistency(
    train_df: pl.DataFrame,
    test_df: pl.DataFrame,
    training_only: Sequence[str] = (TARGET_COLUMN,)
) -> None:
    """
    Raise ColumnMismatchError unless train and test share the same columns
    in the same order, ignoring training-only columns.
    """
    train_cols = [col for col in train_df.columns if col not in training_only]
    test_cols = list(test_df.columns)

    if train_cols != test_cols:
        only_train = [col for col in train_cols if col not in test_cols]
        only_test = [col for col in test_cols if col not in train_cols]
        if not only_train and not only_test:
            raise ColumnMismatchError("Train and test have the same columns in a different order")
        raise ColumnMismatchError(
            f"Train and test columns differ. In train but not test: {only_train}; "
            f"in test but not train: {only_test}"
        )


def prepare_train_test(
    app_train: pl.DataFrame,
    app_test: pl.DataFrame,
    bureau: Optional[pl.DataFrame] = None,
    prev_app: Optional[pl.DataFrame] = None,
    installments: Optional[pl.DataFrame] = None
) -> Tuple[pl.DataFrame, pl.DataFrame, MissingValueStats]:
    """
    End-to-end preparation of the train and test tables.

    Stats are fitted on app_train only and every supplied event table is
    aggregated once; both tables are then prepared with the same stats and
    aggregates, and the column consistency check is enforced.

    Parameters:
    -----------
    app_train : pl.DataFrame
        Training application data
    app_test : pl.DataFrame
        Test application data
    bureau, prev_app, installments : Optional[pl.DataFrame]
        Event-level supplementary tables

    Returns:
    --------
    Tuple[pl.DataFrame, pl.DataFrame, MissingValueStats]
        Prepared train and test data and the stats used for both
    """
    print("\n" + "="*70)
    print("HOME CREDIT DATA PREPARATION PIPELINE")
    print("="*70)
    print(f"Training data: {app_train.shape[0]:,} rows × {app_train.shape[1]} columns")
    print(f"Test data: {app_test.shape[0]:,} rows × {app_test.shape[1]} columns")

    # Fitted on the training table only
    stats = fit_missing_values(app_train)

    print("\n" + "="*70)
    print("AGGREGATING SUPPLEMENTARY DATA")
    print("="*70)

    bureau_agg = aggregate_bureau(bureau) if bureau is not None else None
    prev_agg = aggregate_previous_application(prev_app) if prev_app is not None else None
    inst_agg = aggregate_installments_payments(installments) if installments is not None else None

    print("\n" + "="*70)
    print("PROCESSING TRAINING DATA")
    print("="*70)
    train_final = prepare_application_data(app_train, stats, bureau_agg, prev_agg, inst_agg)

    print("\n" + "="*70)
    print("PROCESSING TEST DATA")
    print("="*70)
    test_final = prepare_application_data(app_test, stats, bureau_agg, prev_agg, inst_agg)

    check_column_consistency(train_final, test_final)
    print("\n✅ Train/test consistency verified: identical columns (except target)")

    return train_final, test_final, stats
