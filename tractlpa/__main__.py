from tractlpa.run import main

main()
