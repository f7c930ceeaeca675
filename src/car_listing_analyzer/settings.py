"""Scrapy settings for car-listing-analyzer crawls."""

BOT_NAME = "car_listing_analyzer"

SPIDER_MODULES = ["car_listing_analyzer.spiders"]
NEWSPIDER_MODULE = "car_listing_analyzer.spiders"

# --- Playwright integration ---
DOWNLOAD_HANDLERS = {
    "http": "scrapy_playwright.handler.ScrapyPlaywrightDownloadHandler",
    "https": "scrapy_playwright.handler.ScrapyPlaywrightDownloadHandler",
}
TWISTED_REACTOR = "twisted.internet.asyncioreactor.AsyncioSelectorReactor"
LISTINGS_USE_PLAYWRIGHT = True
# Stop paginating once a search page is mostly listings already stored.
LISTINGS_SMART_PAGINATION = True

PLAYWRIGHT_BROWSER_TYPE = "chromium"
PLAYWRIGHT_LAUNCH_OPTIONS = {
    "headless": True,
    "args": [
        "--disable-blink-features=AutomationControlled",
        "--no-sandbox",
    ],
}
# Listing data lives in embedded JSON; skip heavy resources.
def PLAYWRIGHT_ABORT_REQUEST(req):
    return req.resource_type in ("image", "font", "media")
PLAYWRIGHT_CONTEXTS = {
    "default": {
        "viewport": {"width": 1920, "height": 1080},
        "ignore_https_errors": True,
        "locale": "pl-PL",
        "user_agent": (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
            "AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/131.0.0.0 Safari/537.36"
        ),
    }
}

# Let the browser send its own headers instead of Scrapy-generated ones.
PLAYWRIGHT_PROCESS_REQUEST_HEADERS = None

# --- Polite crawling ---
ROBOTSTXT_OBEY = False
CONCURRENT_REQUESTS = 2
DOWNLOAD_DELAY = 3  # seconds between requests to the same domain
RANDOMIZE_DOWNLOAD_DELAY = True

# --- Timeouts & retries ---
DOWNLOAD_TIMEOUT = 120
PLAYWRIGHT_DEFAULT_NAVIGATION_TIMEOUT = 120_000  # ms
PLAYWRIGHT_MAX_PAGES_PER_CONTEXT = 1
RETRY_TIMES = 2
RETRY_HTTP_CODES = [500, 502, 503, 504, 408, 429]

# --- Pipelines ---
ITEM_PIPELINES = {
    "car_listing_analyzer.pipelines.DuplicateFilterPipeline": 100,
    "car_listing_analyzer.pipelines.CompleteRecordPipeline": 200,
    "car_listing_analyzer.pipelines.RepositoryPipeline": 900,
}

# Overridden from the application config by the CLI.
DATABASE_PATH = "data/vehicles.db"
PARSER_SCHEMA_PATH = "parser-schema.json"
PLN_TO_EUR_RATE = 0.23

# --- Misc ---
REQUEST_FINGERPRINTER_IMPLEMENTATION = "2.7"
LOG_LEVEL = "INFO"
