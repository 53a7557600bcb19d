from vaultagent.cli import main

main()
