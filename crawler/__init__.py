from crawler.engine import CrawlEngine, CrawlEngineError, SubprocessCrawlEngine
from crawler.reaper import ResourceReaper
