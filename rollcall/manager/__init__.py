from .asynchronous import RollcallAsync, LoginSuccess, CeremonyChallenge
