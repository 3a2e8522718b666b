# Data loading utilities
from .site_months import (
    load_site_month_data,
    site_dataset,
    list_sites,
    aggregate_site_months,
    build_site_month_table,
)
from .design import build_design_matrix, prepare_model_data, count_observed
