"""
Pipeline configuration settings.
"""

import os
from typing import List, Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Alignment settings with environment variable support."""
    
    # General
    log_level: str = "INFO"
    max_workers: int = os.cpu_count() or 1   # Thread pool size for parallel stages
    default_dpi: float = 600.0              # Used when DPI is neither given nor measurable
    
    # ============================================================
    # BOARD BOUNDS SETTINGS
    # ============================================================
    
    bounds_max_dimension: int = 1500       # Longest side of the working copy
    bounds_patch_size: int = 30            # Background sample patch size (px)
    bounds_patch_margin: int = 5           # Distance of patches from the image edge
    bounds_patches_per_edge: int = 8
    bounds_diff_threshold: int = 25        # Per-channel difference from background
    bounds_dark_diff_threshold: int = 40   # Used when every background channel < 30
    bounds_dark_background: int = 30
    bounds_morph_kernel: int = 5
    bounds_max_region_fraction: float = 0.9  # Reject "whole image" contours
    bounds_crop_margin: float = 0.05         # Safety margin around the board
    bounds_min_fraction: float = 0.25        # Smaller detections fall back to full image
    black_border_threshold: int = 15
    
    # ============================================================
    # CONTACT DETECTION SETTINGS
    # ============================================================
    
    # --- Board contact defaults (used when no board spec is supplied) ---
    contact_count: int = 50
    contact_pitch_in: float = 0.125
    contact_width_in: float = 0.0625
    contact_height_in: float = 0.3
    contact_min_for_alignment: int = 30
    
    # --- Search band ---
    search_margin_fraction: float = 0.10   # Outward band as a fraction of board size
    search_margin_min_px: int = 300
    search_inward_fraction: float = 0.20   # Band extent into the board
    
    # --- Grid fitting ---
    cluster_window_px: int = 180           # Default expected contact height
    pitch_tolerance: float = 0.25          # Fraction of pitch
    spacing_min_ratio: float = 0.7         # Accepted spacing vs median
    spacing_max_ratio: float = 1.3
    
    # --- Grid rescue ---
    rescue_color_scale: float = 50.0
    rescue_seed_bonus: float = 1.5
    
    # --- Robust filter ---
    outlier_fraction: float = 0.10
    width_trim_ratio: float = 1.15
    width_reject_ratio: float = 1.30
    width_min_ratio: float = 0.75
    
    # ============================================================
    # RANSAC SETTINGS
    # ============================================================
    
    ransac_iterations: int = 2000
    ransac_threshold_px: float = 3.0
    ransac_min_inliers: int = 3
    ransac_seed: Optional[int] = None              # Fixed seed for deterministic runs
    contact_ransac_iterations: int = 3000
    contact_ransac_threshold_px: float = 1.5
    
    # ============================================================
    # VIA SETTINGS
    # ============================================================
    
    # --- Corner voting ---
    match_neighbors_per_corner: int = 40
    match_bin_size_px: float = 5.0
    match_min_votes: int = 4
    match_max_offset_in: float = 0.1       # Max plausible offset, inches
    match_max_offset_min_px: float = 30.0
    match_assign_radius_px: float = 6.0
    
    # --- Filters ---
    dense_radius_in: float = 0.05
    dense_radius_min_px: float = 15.0
    dense_max_neighbors: int = 2
    merge_distance_in: float = 0.008
    merge_distance_min_px: float = 5.0
    
    # --- Detection ---
    via_min_diameter_in: float = 0.010
    via_max_diameter_in: float = 0.050
    bright_core_threshold: int = 245
    bright_core_edge_threshold: int = 200

    # --- Profile escalation ---
    via_profiles: List[str] = ["strict", "relaxed", "loose"]
    quick_match_min_fraction: float = 0.5
    quick_match_min_count: int = 10
    
    # ============================================================
    # REFINEMENT SETTINGS
    # ============================================================
    
    refine_max_passes: int = 5
    refine_converge_px: float = 3.0
    refine_connector_fraction: float = 0.30   # Lowest part of the Y range
    refine_tolerance_in: float = 0.03
    refine_tolerance_min_px: float = 10.0
    refine_outlier_cap_in: float = 0.025
    
    # ============================================================
    # COARSE ALIGNMENT SETTINGS
    # ============================================================
    
    coarse_min_contacts: int = 10
    coarse_min_pairs: int = 5
    coarse_tolerance_in: float = 0.015
    coarse_tolerance_min_px: float = 8.0
    coarse_max_angle_deg: float = 3.0
    coarse_side_max_angle_deg: float = 1.5
    
    class Config:
        env_prefix = "BOARDALIGN_"
        env_file = ".env"
        extra = "ignore"


# Global settings instance
settings = Settings()
