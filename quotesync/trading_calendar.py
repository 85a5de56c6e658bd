"""
China A-share trading calendar using pandas_market_calendars
Answers trading-day questions for the scheduler and year-end lookups for the combination judge
"""

from datetime import date
import logging
import pandas as pd
import pandas_market_calendars as mcal

calendar_logger = logging.getLogger('trading_calendar')


class ChinaEquityTradingCalendar:
    """
    Shanghai/Shenzhen equity calendar backed by the pandas_market_calendars SSE calendar.
    Shenzhen shares the Shanghai holiday schedule, so one calendar serves both markets.
    """

    def __init__(self, calendar_name: str = 'SSE'):
        self.calendar = mcal.get_calendar(calendar_name)
        calendar_logger.info("TRADING CALENDAR: Initialized with pandas_market_calendars %s calendar", calendar_name)

    def is_trading_day(self, check_date: date) -> bool:
        """
        Check if a specific date is a trading day

        Args:
            check_date: Date to check

        Returns:
            True if the exchange is open on that date
        """
        pd_date = pd.Timestamp(check_date, tz='UTC')
        valid_days = self.calendar.valid_days(start_date=pd.Timestamp(check_date), end_date=pd.Timestamp(check_date))
        return pd_date in valid_days

    @staticmethod
    def last_weekday_of_year(year: int) -> date:
        """Return the last Monday-to-Friday date of ``year``."""

        weekdays = pd.bdate_range(start=f"{year}-12-01", end=f"{year}-12-31")
        return weekdays[-1].date()
