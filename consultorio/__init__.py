"""
Modello dati e storage del Consultorio (studio di psicologia).

Struttura:
- db.py                 : engine e sessioni SQLAlchemy, configurazione da .env
- models.py             : modelli ORM ed enum (utenti, sale, agenda, finanze, integrazioni)
- patient_models.py     : modelli ORM della cartella clinica
- schemas.py            : schemi Pydantic (insert / update / lettura) con alias camelCase
- errors.py             : eccezioni di dominio e traduzione degli IntegrityError
- auth_service.py       : utenti, psicologi, token di recupero password
- services.py           : sale, appuntamenti, prenotazioni, disponibilità, agenda
- permission_service.py : permessi e concessioni per ruolo
- billing_service.py    : transazioni e note fiscali
- calendar_service.py   : token Google e collegamento eventi calendario
- patient_service.py    : cartella clinica e registro accessi
- seed.py               : dati iniziali (permessi, sale)
- cli.py                : gestione da riga di comando
"""
