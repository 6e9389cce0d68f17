"""
Consent Engine - Default Service Catalog

Predefined integrations for a hospitality booking site.
"""

from __future__ import annotations

from consent_engine.core.enums import ConsentCategory
from consent_engine.core.models import ServiceDescriptor

LANGUAGE_STORAGE_KEY = "preferred-language"
THEME_STORAGE_KEY = "preferred-theme"

DEFAULT_SERVICES: tuple[ServiceDescriptor, ...] = (
    # Analytics
    ServiceDescriptor(
        id="google-analytics",
        name="Google Analytics 4",
        category=ConsentCategory.ANALYTICS,
        priority=8,
        load_timeout_ms=5000,
        max_retries=3,
        storage_prefixes=("_ga", "_gid", "_gat"),
        script_url="https://www.googletagmanager.com/gtag/js",
        global_hook="gtag",
    ),
    ServiceDescriptor(
        id="hotjar",
        name="Hotjar Heatmaps",
        category=ConsentCategory.ANALYTICS,
        priority=6,
        load_timeout_ms=7000,
        max_retries=2,
        storage_prefixes=("_hj",),
        script_url="https://static.hotjar.com/c/hotjar.js",
        global_hook="hj",
    ),
    ServiceDescriptor(
        id="microsoft-clarity",
        name="Microsoft Clarity",
        category=ConsentCategory.ANALYTICS,
        priority=5,
        load_timeout_ms=6000,
        max_retries=2,
        storage_prefixes=("_clck", "_clsk"),
        script_url="https://www.clarity.ms/tag/clarity.js",
        global_hook="clarity",
    ),
    # Marketing
    ServiceDescriptor(
        id="facebook-pixel",
        name="Facebook Pixel",
        category=ConsentCategory.MARKETING,
        priority=7,
        load_timeout_ms=4000,
        max_retries=3,
        storage_prefixes=("_fbp", "_fbc"),
        script_url="https://connect.facebook.net/en_US/fbevents.js",
        global_hook="fbq",
    ),
    ServiceDescriptor(
        id="google-ads",
        name="Google Ads Conversion",
        category=ConsentCategory.MARKETING,
        priority=7,
        load_timeout_ms=4000,
        max_retries=3,
        # Google Ads reuses the gtag runtime
        dependencies=("google-analytics",),
        storage_prefixes=("_gads", "_gcl"),
        script_url="https://www.googletagmanager.com/gtag/js",
        global_hook="gtag",
    ),
    ServiceDescriptor(
        id="linkedin-insight",
        name="LinkedIn Insight Tag",
        category=ConsentCategory.MARKETING,
        priority=5,
        load_timeout_ms=5000,
        max_retries=2,
        storage_prefixes=("li_", "lidc", "bcookie"),
        script_url="https://snap.licdn.com/li.lms-analytics/insight.min.js",
        global_hook="_linkedin_data_partner_ids",
    ),
    ServiceDescriptor(
        id="airbnb-pixel",
        name="Airbnb Pixel",
        category=ConsentCategory.MARKETING,
        priority=6,
        load_timeout_ms=5000,
        max_retries=2,
        storage_prefixes=("_airbed",),
    ),
    # Preferences
    ServiceDescriptor(
        id="booking-widget",
        name="Booking.com Widget",
        category=ConsentCategory.PREFERENCES,
        priority=9,
        load_timeout_ms=8000,
        max_retries=3,
        storage_prefixes=("bkng",),
    ),
    ServiceDescriptor(
        id="language-detection",
        name="Language Detection",
        category=ConsentCategory.PREFERENCES,
        priority=8,
        load_timeout_ms=2000,
        max_retries=1,
        storage_prefixes=(LANGUAGE_STORAGE_KEY,),
    ),
    ServiceDescriptor(
        id="theme-customization",
        name="Theme Customization",
        category=ConsentCategory.PREFERENCES,
        priority=6,
        load_timeout_ms=1000,
        max_retries=1,
        storage_prefixes=(THEME_STORAGE_KEY,),
    ),
    # Essential
    ServiceDescriptor(
        id="error-tracking",
        name="Error Tracking",
        category=ConsentCategory.NECESSARY,
        priority=10,
        is_essential=True,
        load_timeout_ms=3000,
        max_retries=5,
    ),
    ServiceDescriptor(
        id="security-monitoring",
        name="Security Monitoring",
        category=ConsentCategory.NECESSARY,
        priority=10,
        is_essential=True,
        load_timeout_ms=2000,
        max_retries=5,
    ),
)
