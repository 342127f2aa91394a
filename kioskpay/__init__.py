"""KioskPay - donation kiosk backend for Square payments and kiosk subscriptions"""
