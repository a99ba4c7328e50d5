"""fnhost · Function-Host mit Cron-Scheduler.

Speichert hochgeladene JavaScript-/TypeScript-Funktionen, installiert deren
npm-Abhängigkeiten und führt sie in isolierten Node.js-Prozessen aus --
auf Abruf oder zeitgesteuert per Cron-Ausdruck.
"""

__version__ = "0.4.0"
